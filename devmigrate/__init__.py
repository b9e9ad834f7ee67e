"""devmigrate: reboot-persistent Workspace ONE to Intune device migration."""

from .capabilities import DeviceProbe, MigrationCapabilities, MigrationContext, ProfileMapping
from .config import MigrationConfig, load_config
from .continuation import FileContinuation, InMemoryContinuation, ScheduledTaskContinuation
from .controller import StageController
from .dispatch import LocalDispatcher, RemoteDispatcher
from .fleet import FleetOrchestrator
from .models import MigrationRecord, ResumeResult, Stage, Summary, VerificationResult
from .persistence import get_state_store
from .transaction import TransactionManager
from .verification import Check, VerificationEngine

__version__ = "0.1.0"
__all__ = [
    "Check",
    "DeviceProbe",
    "FileContinuation",
    "FleetOrchestrator",
    "InMemoryContinuation",
    "LocalDispatcher",
    "MigrationCapabilities",
    "MigrationConfig",
    "MigrationContext",
    "MigrationRecord",
    "ProfileMapping",
    "RemoteDispatcher",
    "ResumeResult",
    "ScheduledTaskContinuation",
    "Stage",
    "StageController",
    "Summary",
    "TransactionManager",
    "VerificationEngine",
    "VerificationResult",
    "get_state_store",
    "load_config",
]
