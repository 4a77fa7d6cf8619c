import logging

# Configure logging with better format
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s | %(levelname)-8s | %(message)s',
    datefmt='%H:%M:%S'
)
logger = logging.getLogger("line_service")

def _format(message: str, details: str = "") -> str:
    return f"{message}" + (f" → {details}" if details else "")

def log_info(message: str, details: str = ""):
    logger.info(_format(message, details))

def log_warning(message: str, details: str = ""):
    logger.warning(f"⚠️ {_format(message, details)}")

def log_error(message: str, details: str = ""):
    logger.error(f"❌ {_format(message, details)}")

def log_success(message: str, details: str = ""):
    """Log successful operations with a success indicator."""
    logger.info(f"✅ {_format(message, details)}")
