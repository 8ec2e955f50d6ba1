"""Application paths and constants."""

from pathlib import Path

# Base paths
PROJECT_ROOT = Path(__file__).resolve().parent.parent
STATE_DIR_NAME = ".markdesk_state"
STATE_DIR_ENV = "MARKDESK_STATE_DIR"

# Settings file (YAML), looked up in the state dir unless given explicitly
SETTINGS_FILE_NAME = "job_system.yaml"

# Durable store layout inside the state dir
STORE_DIR_NAME = "store"
LOGS_DIR_NAME = "logs"
