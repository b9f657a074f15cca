"""Student reference data: departments, year levels and students.

These tables are maintained by the enrollment side of the platform; the
ledger core only reads them to resolve scope filters.
"""

import enum
from datetime import datetime

from sqlalchemy import String, Integer, Boolean, Enum, DateTime, ForeignKey, func
from sqlalchemy.orm import Mapped, mapped_column

from bursar.database import Base


class Classification(str, enum.Enum):
    K12 = "k12"
    COLLEGE = "college"


class Department(Base):
    __tablename__ = "departments"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    classification: Mapped[Classification] = mapped_column(
        Enum(Classification), nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class YearLevel(Base):
    __tablename__ = "year_levels"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    department_id: Mapped[int] = mapped_column(
        ForeignKey("departments.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    level_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class Student(Base):
    __tablename__ = "students"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True, unique=True)
    student_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    classification: Mapped[Classification] = mapped_column(
        Enum(Classification), nullable=False, index=True
    )
    department_id: Mapped[int | None] = mapped_column(
        ForeignKey("departments.id"), nullable=True, index=True
    )
    year_level_id: Mapped[int | None] = mapped_column(
        ForeignKey("year_levels.id"), nullable=True, index=True
    )
    enrollment_status: Mapped[str] = mapped_column(String(30), default="enrolled", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"
