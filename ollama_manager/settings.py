"""
This module contains the configuration settings for the Ollama Manager.
It defines paths, supervisor timings, probe commands and the environment
handed to the supervised `ollama serve` process.
"""

import os
import pathlib
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv(override=True)

#* --- Core Paths ---
BASE_DIR = pathlib.Path(__file__).resolve().parent.parent  # Project Root
DATA_DIR = pathlib.Path(os.getenv("OLLAMA_MANAGER_HOME", str(pathlib.Path.home() / ".ollama-manager")))
LOGS_DIR = DATA_DIR / "logs"

#* --- Application File Paths ---
LOG_FILE_PATH = LOGS_DIR / "ollama-manager.log"
SERVICE_LOG_PATH = LOGS_DIR / "ollama-serve.log"
OVERRIDES_JSON_PATH = DATA_DIR / "overrides.json"

#* --- Supervised Service ---
SERVICE_NAME = "ollama"
SERVICE_ARGS = ["serve"]
SERVICE_COMMAND_SIGNATURE = "ollama serve"
BINARY_ENV_VAR = "OLLAMA_PATH"
INSTALL_URL = "https://ollama.com/download"

OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
READINESS_PATH = "/api/tags"

#* --- Supervisor Timings (seconds) ---
READINESS_INITIAL_DELAY = 0.5
READINESS_MAX_DELAY = 4.0
READINESS_TIMEOUT = 15.0
READINESS_REQUEST_TIMEOUT = 2.0
MONITOR_INTERVAL = 2.0
STOP_GRACE_PERIOD = 2.0
PROBE_COMMAND_TIMEOUT = 5
SHUTDOWN_KILL_TIMEOUT = 3

#* --- Resource Monitoring ---
RAM_DELTA_THRESHOLD_MB = 0.1

#* --- Logging ---
VERBOSE_LOGGING = False
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUP_COUNT = 3

#* --- MODIFIABLE SETTINGS (Changeable at runtime via 'config' command) ---
MODIFIABLE_SETTINGS = {
    "OLLAMA_BIND_ADDRESS", "OLLAMA_KEEP_ALIVE",
    "KILL_ON_STARTUP_TIMEOUT", "PROBE_BACKEND", "LOG_TO_FILE",
}

#* --- Default Values for Modifiable Settings ---
OLLAMA_BIND_ADDRESS = os.getenv("OLLAMA_BIND_ADDRESS", "0.0.0.0:11434")
OLLAMA_KEEP_ALIVE = os.getenv("OLLAMA_KEEP_ALIVE_DEFAULT", "5m")
# A process that misses the readiness deadline is left running unless enabled.
KILL_ON_STARTUP_TIMEOUT = os.getenv("KILL_ON_STARTUP_TIMEOUT", "False").lower() in ('true', '1', 't')
# 'command' uses the platform tools (ps/pgrep/pkill, tasklist/taskkill), 'psutil' the psutil library.
PROBE_BACKEND = os.getenv("PROBE_BACKEND", "command").lower()
LOG_TO_FILE = os.getenv("LOG_TO_FILE", "True").lower() in ('true', '1', 't')
