DEFAULT_CONFIG_FILE = "devmigrate.yaml"
CONFIG_ENV_VAR = "DEVMIGRATE_CONFIG"
STATE_URL_ENV_VAR = "DEVMIGRATE_STATE_URL"

DEFAULT_STATE_PATH = "./devmigrate-state/state.db"
DEFAULT_LOG_PATH = "./devmigrate-state/devmigrate.log"
DEFAULT_TASK_NAME = "DevMigrateResume"
