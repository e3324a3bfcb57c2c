from .logger import (
    clear_request_id,
    flush_logging,
    get_logger,
    get_request_id,
    log_stage,
    set_request_id,
    setup_logging,
)

__all__ = [
    "clear_request_id",
    "flush_logging",
    "get_logger",
    "get_request_id",
    "log_stage",
    "set_request_id",
    "setup_logging",
]
