import logging
import logging.handlers
import json
import os
import re
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, Optional


# Log directory (created on import)
BASE_DIR = Path(__file__).resolve().parent.parent.parent
LOG_DIR = Path(os.getenv("LOG_DIR", BASE_DIR / "logs"))
LOG_DIR.mkdir(parents=True, exist_ok=True)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

LOG_FILES = {
    "application": LOG_DIR / "application.log",
    "security": LOG_DIR / "security.log",
    "transactions": LOG_DIR / "transactions.log",
    "audit": LOG_DIR / "audit.log",
    "errors": LOG_DIR / "errors.log",
}

# Rotation settings
MAX_BYTES = 10 * 1024 * 1024  # 10MB
BACKUP_COUNT = 10

# ============================
# SENSITIVE DATA FILTER
# ============================


class SensitiveDataFilter(logging.Filter):
    """Redact gateway secrets, signatures and credentials from logs"""

    # extra={...} keys whose values are never written out
    SENSITIVE_KEYS = {
        "signature",
        "vnp_securehash",
        "secret_key",
        "secretkey",
        "hash_secret",
        "access_key",
        "accesskey",
        "password",
        "token",
        "access_token",
    }

    PATTERNS = {
        "signature": re.compile(
            r"\b(signature|vnp_SecureHash|secretKey|accessKey|hash_secret)=([A-Za-z0-9%._-]+)",
            re.IGNORECASE,
        ),
        "password": re.compile(r"\bpassword[:\s=]*\S+\b", re.IGNORECASE),
        "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b"),
        "bearer": re.compile(r"(Bearer\s+)[A-Za-z0-9_.-]+", re.IGNORECASE),
    }

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self._redact(record.msg)

        if record.args:
            record.args = tuple(
                self._redact(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )

        for key, value in list(record.__dict__.items()):
            if key.startswith("_"):
                continue
            if key.lower() in self.SENSITIVE_KEYS:
                record.__dict__[key] = "[REDACTED]"
                continue
            record.__dict__[key] = self._redact_obj(value)

        return True

    def _redact_obj(self, value: Any) -> Any:
        if isinstance(value, str):
            return self._redact(value)
        if isinstance(value, dict):
            return {
                k: "[REDACTED]" if str(k).lower() in self.SENSITIVE_KEYS else self._redact_obj(v)
                for k, v in value.items()
            }
        if isinstance(value, (list, tuple)):
            redacted = [self._redact_obj(v) for v in value]
            return type(value)(redacted) if isinstance(value, tuple) else redacted
        return value

    def _redact(self, text: str) -> str:
        text = self.PATTERNS["signature"].sub(r"\1=[REDACTED]", text)
        text = self.PATTERNS["password"].sub("password=[REDACTED]", text)

        def mask_email(match):
            local, _, domain = match.group().partition("@")
            return f"{local[:1]}***@{domain}"

        text = self.PATTERNS["email"].sub(mask_email, text)
        text = self.PATTERNS["bearer"].sub(r"\1***", text)
        return text


# ============================
# REQUEST CONTEXT (request_id, user_id, ip)
# ============================


_request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_user_id_ctx: ContextVar[Optional[str]] = ContextVar("user_id", default=None)
_ip_address_ctx: ContextVar[Optional[str]] = ContextVar("ip_address", default=None)


def set_request_context(
    *,
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "request_id": _request_id_ctx.set(request_id),
        "user_id": _user_id_ctx.set(user_id),
        "ip_address": _ip_address_ctx.set(ip_address),
    }


def clear_request_context(tokens: Dict[str, Any]) -> None:
    if not tokens:
        return
    _request_id_ctx.reset(tokens["request_id"])
    _user_id_ctx.reset(tokens["user_id"])
    _ip_address_ctx.reset(tokens["ip_address"])


class RequestContextFilter(logging.Filter):
    """Inject request-scoped context into each log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = _request_id_ctx.get()
        if not hasattr(record, "user_id"):
            record.user_id = _user_id_ctx.get()
        if not hasattr(record, "ip_address"):
            record.ip_address = _ip_address_ctx.get()
        return True


class JsonFormatter(logging.Formatter):

    RESERVED = {
        "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
        "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
        "created", "msecs", "relativeCreated", "thread", "threadName",
        "processName", "process", "taskName",
    }

    def format(self, record: logging.LogRecord):
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key, value in record.__dict__.items():
            if key in self.RESERVED or key.startswith("_") or key in log_data:
                continue
            log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_file_handler(log_file: Path, level: int = logging.INFO):
    """Rotating JSON file handler"""
    handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8"
    )
    handler.setLevel(level)
    handler.setFormatter(JsonFormatter())
    handler.addFilter(RequestContextFilter())
    handler.addFilter(SensitiveDataFilter())
    return handler


def setup_console_handler(level: int = logging.INFO):
    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    handler.addFilter(RequestContextFilter())
    handler.addFilter(SensitiveDataFilter())
    return handler


def get_logger(
    name: str,
    level: Optional[str] = None,
    console: bool = True,
    file_type: str = 'application'
):
    """
    Get or create a logger with specified configuration

    Args:
        name: Logger name
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        console: Enable console output
        file_type: Type of log file (application, security, transactions, audit, errors)
    """
    logger = logging.getLogger(name)

    log_level = getattr(logging, level or LOG_LEVEL, logging.INFO)
    logger.setLevel(log_level)

    # Avoid duplicate handlers
    if logger.handlers:
        return logger

    logger.propagate = False

    if console:
        logger.addHandler(setup_console_handler(log_level))

    if file_type in LOG_FILES:
        logger.addHandler(setup_file_handler(LOG_FILES[file_type], log_level))

    return logger


def get_application_logger(name: str = 'app'):
    """Application logger (application.log)"""
    return get_logger(name, file_type='application', console=True)


def get_security_logger(name: str = 'security'):
    """Security logger (security.log)"""
    return get_logger(name, file_type='security', console=True)


def get_transaction_logger(name: str = 'transaction'):
    """Payment/transaction logger (transactions.log)"""
    return get_logger(name, file_type='transactions', console=True)


def get_audit_logger(name: str = 'audit'):
    """Audit logger, JSON file only"""
    return get_logger(name, level='INFO', file_type='audit', console=False)


def get_error_logger(name: str = 'error'):
    """Error logger (errors.log, ERROR level only)"""
    return get_logger(name, level='ERROR', file_type='errors', console=True)


# ============================
# HIGH-LEVEL LOGGING FUNCTIONS
# ============================

def log_payment_attempt(
    transaction_id: Optional[str],
    order_id: Any,
    amount: Optional[int],
    provider: str,
    status: str,
    **kwargs
):
    """Record a gateway callback outcome in transactions.log"""
    logger = get_transaction_logger()
    logger.info(
        f"Payment {status}",
        extra={
            'transaction_id': transaction_id,
            'order_id': order_id,
            'amount': amount,
            'currency': 'VND',
            'provider': provider,
            'status': status,
            **kwargs
        }
    )


def log_security_event(
    event_type: str,
    severity: str,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    details: Optional[Dict] = None
):
    """Log security event to security.log"""
    logger = get_security_logger()

    log_func = {
        'debug': logger.debug,
        'info': logger.info,
        'warning': logger.warning,
        'error': logger.error,
        'critical': logger.critical
    }.get(severity.lower(), logger.info)

    log_func(
        f"Security: {event_type}",
        extra={
            'event_type': event_type,
            'user_id': user_id,
            'ip_address': ip_address,
            **(details or {})
        }
    )


def log_audit_trail(
    action: str,
    actor_user_id: str,
    target: str,
    details: Optional[Dict] = None
):
    """Log audit trail to audit.log"""
    logger = get_audit_logger()
    logger.info(
        f"Audit: {action}",
        extra={
            'action': action,
            'actor': actor_user_id,
            'target': target,
            **(details or {})
        }
    )


def init_logging():
    """Create log files and announce the log location"""
    for log_file in LOG_FILES.values():
        if not log_file.exists():
            log_file.touch()

    bootstrap_logger = get_application_logger("logging")
    bootstrap_logger.info(
        "Logging initialized",
        extra={"log_dir": str(LOG_DIR), "log_files": {k: str(v) for k, v in LOG_FILES.items()}},
    )
