"""Seed data for the document fee catalog."""

from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bursar.models.document_request import DocumentFeeItem, ProcessingType


# (category, name, document_type, price, processing_type, processing_days)
DOCUMENT_FEES = [
    ("Academic Records", "Transcript of Records", "transcript", "150.00", ProcessingType.NORMAL, 7),
    ("Academic Records", "Transcript of Records (Rush)", "transcript", "300.00", ProcessingType.RUSH, 2),
    ("Academic Records", "Form 137", "form_137", "100.00", ProcessingType.NORMAL, 5),
    ("Academic Records", "Form 138/Report Card", "form_138", "50.00", ProcessingType.NORMAL, 3),
    ("Certifications", "Certificate of Enrollment", "certificate_enrollment", "50.00", ProcessingType.NORMAL, 2),
    ("Certifications", "Certificate of Good Moral", "certificate_good_moral", "75.00", ProcessingType.NORMAL, 3),
    ("Certifications", "Certificate of Completion", "certificate_completion", "75.00", ProcessingType.NORMAL, 3),
    ("Certifications", "CAV (Certification, Authentication, Verification)", "cav", "250.00", ProcessingType.NORMAL, 10),
    ("Credentials", "Honorable Dismissal", "honorable_dismissal", "200.00", ProcessingType.NORMAL, 7),
    ("Credentials", "Diploma (Replacement)", "diploma", "500.00", ProcessingType.NORMAL, 14),
]


async def _ensure_fee_item(
    db: AsyncSession,
    category: str,
    name: str,
    document_type: str,
    price: str,
    processing_type: ProcessingType,
    processing_days: int,
) -> None:
    res = await db.execute(select(DocumentFeeItem).where(DocumentFeeItem.name == name))
    if res.scalar_one_or_none():
        return
    db.add(
        DocumentFeeItem(
            category=category,
            name=name,
            document_type=document_type,
            price=Decimal(price),
            processing_type=processing_type,
            processing_days=processing_days,
            is_active=True,
        )
    )
    await db.flush()


async def seed_catalog_data(db: AsyncSession) -> None:
    """Idempotently seed the document fee catalog."""
    for row in DOCUMENT_FEES:
        await _ensure_fee_item(db, *row)
    await db.commit()
