"""Error log model: unexpected failures kept for admin monitoring."""

import enum
from datetime import datetime

from sqlalchemy import String, Text, Integer, DateTime, Enum, Float, func
from sqlalchemy.orm import Mapped, mapped_column

from bursar.database import Base


class ErrorSeverity(str, enum.Enum):
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorLog(Base):
    """An exception captured by the middleware or an endpoint's handler."""
    __tablename__ = "error_logs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    severity: Mapped[ErrorSeverity] = mapped_column(
        Enum(ErrorSeverity), default=ErrorSeverity.ERROR, nullable=False,
    )
    error_type: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    traceback: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Origin
    module: Mapped[str | None] = mapped_column(String(300), nullable=True)
    function_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    line_number: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Request context, when raised under an API call
    request_method: Mapped[str | None] = mapped_column(String(10), nullable=True)
    request_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_time_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    resolved: Mapped[bool] = mapped_column(default=False, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )
