"""
Utilities module for the reservation escrow service.

Provides helper functions for logging, money arithmetic, code generation,
and masking of sensitive values.
"""

import re
import secrets
import string
import logging
import sys
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Optional, Any
from logging.handlers import RotatingFileHandler
from pathlib import Path


CENTS = Decimal('0.01')
CODE_ALPHABET = string.ascii_uppercase + string.digits


# ANSI color codes for console output
class Colors:
    """ANSI color codes for terminal output."""
    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    YELLOW = '\033[93m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GRAY = '\033[90m'


class ColoredFormatter(logging.Formatter):
    """Custom formatter that adds colors to console output."""

    COLORS = {
        'DEBUG': Colors.GRAY,
        'INFO': Colors.BLUE,
        'WARNING': Colors.YELLOW,
        'ERROR': Colors.RED,
        'CRITICAL': f"{Colors.BOLD}{Colors.RED}",
    }

    def format(self, record: logging.LogRecord) -> str:
        """
        Format log record with colors.

        The record is copied first so that file handlers sharing the same
        record still see the plain level name.

        Args:
            record: Log record to format

        Returns:
            Formatted log message with color codes
        """
        record = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname, Colors.RESET)
        record.levelname = f"{color}{record.levelname}{Colors.RESET}"
        record.name = f"{Colors.CYAN}{record.name}{Colors.RESET}"
        return super().format(record)


def setup_logger(
    name: Optional[str] = None,
    log_level: str = 'INFO',
    log_file: Optional[str] = None,
    log_format: str = 'text',
    max_bytes: int = 10485760,  # 10MB
    backup_count: int = 5,
    colorful_console: bool = True
) -> logging.Logger:
    """
    Set up a logger with both console and file handlers.

    Called once at start-up with ``name=None`` so that every module logger
    created with ``logging.getLogger(__name__)`` inherits the handlers.

    Args:
        name: Logger name (None configures the root logger)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file
        log_format: Format type ('text' or 'json')
        max_bytes: Maximum log file size before rotation
        backup_count: Number of backup files to keep
        colorful_console: Whether to use colored console output

    Returns:
        Configured logger instance

    Example:
        >>> logger = setup_logger(log_level='DEBUG', log_file='logs/escrow.log')
        >>> logger.info('Application started')
    """
    logger = logging.getLogger(name)
    level = getattr(logging, log_level.upper())
    logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    logger.handlers = []

    if log_format == 'json':
        formatter_str = '{"time": "%(asctime)s", "name": "%(name)s", "level": "%(levelname)s", "message": "%(message)s"}'
    else:
        formatter_str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    if colorful_console and log_format != 'json':
        console_formatter = ColoredFormatter(formatter_str)
    else:
        console_formatter = logging.Formatter(formatter_str)

    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(formatter_str))
        logger.addHandler(file_handler)

    return logger


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_money(value: Any) -> Decimal:
    """
    Convert a number or numeric string to a Decimal rounded to cents.

    Args:
        value: int, float, str or Decimal

    Returns:
        Decimal with two decimal places (half-up rounding)

    Raises:
        ValueError: If the value is not numeric

    Example:
        >>> to_money('1000')
        Decimal('1000.00')
        >>> to_money(12.345)
        Decimal('12.35')
    """
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            # str() first so floats keep their printed value, not the binary one
            amount = Decimal(str(value).replace(',', '').strip())
        except (InvalidOperation, AttributeError):
            raise ValueError(f"Invalid amount format: '{value}'")

    if not amount.is_finite():
        raise ValueError(f"Invalid amount format: '{value}'")

    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def format_currency(amount: Any, currency: str = 'R$') -> str:
    """
    Format amount as currency string.

    Example:
        >>> format_currency(Decimal('1234.5'))
        'R$ 1,234.50'
    """
    return f"{currency} {to_money(amount):,.2f}"


def generate_code(prefix: str, length: int, year: Optional[int] = None) -> str:
    """
    Generate a human-readable unique-ish code such as ``TXN-2026-7Q2K``.

    Uniqueness is enforced by the database; callers retry on collision.

    Args:
        prefix: Code prefix (e.g. 'TXN', 'DSP')
        length: Number of random characters from A-Z0-9
        year: Year segment (defaults to the current UTC year)
    """
    year = year or utcnow().year
    suffix = ''.join(secrets.choice(CODE_ALPHABET) for _ in range(length))
    return f"{prefix}-{year}-{suffix}"


def sanitize_input(text: str, max_length: int = 2000) -> str:
    """
    Strip control characters and trim free text to a maximum length.

    Args:
        text: Input text to sanitize
        max_length: Maximum allowed length

    Returns:
        Sanitized text
    """
    if not text:
        return ''

    text = ''.join(char for char in text if ord(char) >= 32 or char in '\n\r\t')
    return text.strip()[:max_length]


def mask_sensitive_data(data: Optional[str], visible_chars: int = 4) -> str:
    """
    Mask sensitive data for logging (e.g., tax ids, tokens).

    Args:
        data: Sensitive data to mask
        visible_chars: Number of characters to keep visible at the end

    Returns:
        Masked string

    Example:
        >>> mask_sensitive_data('12345678909', 4)
        '*******8909'
    """
    if not data or len(data) <= visible_chars:
        return '*' * len(data) if data else ''

    masked_length = len(data) - visible_chars
    return '*' * masked_length + data[-visible_chars:]


def only_digits(value: Optional[str]) -> str:
    """Keep the digits of a document or phone number."""
    return re.sub(r'\D', '', value or '')
