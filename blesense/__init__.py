# Passive Bluetooth sensing: scan ingestion, duty cycling and history storage
from .logging import get_logger, app_logger, scan_logger, storage_logger
