"""
SolarSats - Off-grid Mining Automation Configuration
"""
import os

# Monitoring settings
AUTOMATION_INTERVAL = 30  # seconds between scheduled power automation passes
SCHEDULER_ENABLED = os.environ.get('SOLARSATS_SCHEDULER', 'true').lower() == 'true'

# Power automation timing
POWER_AUTOMATION_MIN_RUN_INTERVAL = 15  # seconds between fleet passes
POWER_AUTOMATION_DEBOUNCE = 45  # seconds per (miner, direction) after a switch command

# Fleet-wide defaults
CRITICAL_BATTERY_OFF_PERCENT = 30.0
AUTO_ON_BATTERY_DEFAULT_PERCENT = 60.0
RESTART_DELAY_MINUTES = 10  # cooldown between low hashrate prompts

# Per-miner defaults
OVERHEAT_SHUTDOWN_TEMP_C = 84.0
LOW_HASHRATE_THRESHOLD_GH = 10.0
POST_RESTART_GRACE_MINUTES = 10
AUTO_POWER_RESTORE_DELAY_MINUTES = 10

# Unit heuristics
HASHRATE_MHS_CUTOFF = 500  # values above are MH/s, below are GH/s
WATTS_CUTOFF = 100  # power values at or above are W, below are kW

# Signal fusion deadbands (kW)
WIRE_POWER_DEADBAND_KW = 0.001
GRID_POWER_DEADBAND_KW = 0.05
BATTERY_POWER_DEADBAND_KW = 0.05
GENERATION_DEADBAND_KW = 0.05

# Database
DATABASE_PATH = os.environ.get(
    'SOLARSATS_DB_PATH',
    os.path.join(os.path.dirname(__file__), "solarsats.db")
)

# Deye Cloud (power station)
DEYE_BASE_URL = os.environ.get('DEYE_BASE_URL', 'https://eu1-developer.deyecloud.com/v1.0')
DEYE_APP_ID = os.environ.get('DEYE_APP_ID', '')
DEYE_APP_SECRET = os.environ.get('DEYE_APP_SECRET', '')
DEYE_STATION_ID = os.environ.get('DEYE_STATION_ID', '')
DEYE_ACCESS_TOKEN = os.environ.get('DEYE_ACCESS_TOKEN', '')
DEYE_EMAIL = os.environ.get('DEYE_EMAIL', '')
DEYE_USERNAME = os.environ.get('DEYE_USERNAME', '')
DEYE_MOBILE = os.environ.get('DEYE_MOBILE', '')
DEYE_COUNTRY_CODE = os.environ.get('DEYE_COUNTRY_CODE', '')
DEYE_COMPANY_ID = os.environ.get('DEYE_COMPANY_ID', '')
DEYE_PASSWORD = os.environ.get('DEYE_PASSWORD', '')
DEYE_PASSWORD_SHA256 = os.environ.get('DEYE_PASSWORD_SHA256', '')
DEYE_API_TIMEOUT = 10

# Tuya Cloud (smart outlets)
TUYA_REGION = os.environ.get('TUYA_REGION', 'eu').lower()
TUYA_BASE_URL = os.environ.get('TUYA_BASE_URL', '')
TUYA_ACCESS_ID = os.environ.get('TUYA_ACCESS_ID', '')
TUYA_ACCESS_SECRET = os.environ.get('TUYA_ACCESS_SECRET', '')
TUYA_USER_ID = os.environ.get('TUYA_USER_ID', '')
TUYA_API_TIMEOUT = 10

TUYA_REGION_HOSTS = {
    'eu': 'https://openapi.tuyaeu.com',
    'us': 'https://openapi.tuyaus.com',
    'cn': 'https://openapi.tuyacn.com',
    'in': 'https://openapi.tuyain.com',
}

# Flask settings
FLASK_HOST = "0.0.0.0"
FLASK_PORT = 5001
DEBUG = os.environ.get('FLASK_DEBUG', 'false').lower() == 'true'

# Supported command types
COMMAND_TYPES = {
    "RESTART": "Restart",
    "SLEEP": "Sleep",
    "WAKE": "Wake",
    "RELOAD_CONFIG": "Reload config",
}


def tuya_base_url() -> str:
    """Resolve the Tuya OpenAPI host from an explicit URL or the region"""
    if TUYA_BASE_URL:
        return TUYA_BASE_URL.rstrip('/')
    return TUYA_REGION_HOSTS.get(TUYA_REGION, TUYA_REGION_HOSTS['eu'])
