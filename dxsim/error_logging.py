from enum import Enum
import logging
import os
from datetime import datetime
from typing import Optional, Dict, Any

from dxsim.config import LOG_DIR
from dxsim.core.request_context import get_request_id


class LogSection(Enum):
    CASE_LIBRARY = "CASES"
    REFERENCE = "REFERENCE"
    SESSION = "SESSION"
    ENGINE = "ENGINE"
    STREAMING = "STREAM"
    CLIENT = "CLIENT"


class SectionLogger:
    def __init__(self, section: LogSection, log_dir: Optional[str] = LOG_DIR):
        self.section = section
        self.logger = logging.getLogger(f"dxsim.{section.value.lower()}")
        self.logger.setLevel(logging.INFO)

        # Section-specific log file next to the root handlers
        if log_dir and not self.logger.handlers:
            os.makedirs(log_dir, exist_ok=True)
            file_handler = logging.FileHandler(os.path.join(log_dir, f'{section.value.lower()}_errors.log'))
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            ))
            self.logger.addHandler(file_handler)

    def _entry_id(self, code: str) -> str:
        return f"{self.section.value}-{code}-{datetime.now().strftime('%Y%m%d%H%M%S')}"

    def log_error(self, error_code: str, message: str, context: Optional[Dict[str, Any]] = None,
                  exc_info: bool = False) -> str:
        """Log an error with section-specific context"""
        error_id = self._entry_id(error_code)
        self.logger.error(f"{error_id} [{get_request_id()}]: {message}", exc_info=exc_info)
        if context:
            self.logger.error(f"Context: {context}")
        return error_id

    def log_warning(self, warning_code: str, message: str, context: Optional[Dict[str, Any]] = None) -> str:
        """Log a warning with section-specific context"""
        warning_id = self._entry_id(warning_code)
        self.logger.warning(f"{warning_id} [{get_request_id()}]: {message}")
        if context:
            self.logger.warning(f"Context: {context}")
        return warning_id

    def log_info(self, info_code: str, message: str, context: Optional[Dict[str, Any]] = None) -> str:
        """Log an info message with section-specific context"""
        info_id = self._entry_id(info_code)
        self.logger.info(f"{info_id} [{get_request_id()}]: {message}")
        if context:
            self.logger.info(f"Context: {context}")
        return info_id


# Create section-specific loggers
case_logger = SectionLogger(LogSection.CASE_LIBRARY)
reference_logger = SectionLogger(LogSection.REFERENCE)
session_logger = SectionLogger(LogSection.SESSION)
engine_logger = SectionLogger(LogSection.ENGINE)
stream_logger = SectionLogger(LogSection.STREAMING)
client_logger = SectionLogger(LogSection.CLIENT)


# Error code constants
class ErrorCodes:
    # Case library
    CASES_FETCH_FAILED = "CASES-001"
    CASES_INVALID_RECORD = "CASES-002"
    CASES_FILTERED = "CASES-003"
    CASES_RANDOM_EXHAUSTED = "CASES-004"
    CASES_EMPTY_STORE = "CASES-005"
    CASES_RETURNED = "CASES-006"

    # Reference resolution
    REF_MISS = "REFERENCE-001"
    REF_EXPIRED = "REFERENCE-002"
    REF_LOOKUP_FAILED = "REFERENCE-003"
    REF_BAD_TIMESTAMP = "REFERENCE-004"
    REF_HIT = "REFERENCE-005"

    # Session coordination
    SESSION_COLD_START = "SESSION-001"
    SESSION_SWITCH = "SESSION-002"
    SESSION_REUSE = "SESSION-003"
    SESSION_RELOAD = "SESSION-004"
    SESSION_CREATED = "SESSION-005"
    SESSION_ENDED = "SESSION-006"
    SESSION_PRUNED = "SESSION-007"

    # Completion engine
    ENGINE_INIT_FAILED = "ENGINE-001"
    ENGINE_PROMPT_MISSING = "ENGINE-002"
    ENGINE_CALL_FAILED = "ENGINE-003"
    ENGINE_READY = "ENGINE-004"

    # Streaming
    STREAM_STARTED = "STREAM-001"
    STREAM_CANCELLED = "STREAM-002"
    STREAM_ERROR = "STREAM-003"
    STREAM_COMPLETE = "STREAM-004"
    STREAM_NO_REFERENCE = "STREAM-005"

    # Client consumer
    CLIENT_ABANDONED = "CLIENT-001"
    CLIENT_CANCELLED = "CLIENT-002"
    CLIENT_FAILED = "CLIENT-003"
    CLIENT_BAD_EVENT = "CLIENT-004"
