"""Gateway status queries made while reconciling M-Pesa payments."""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, ForeignKey, JSON, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from src.core.database.base import Base, BigIntPK


class MpesaVerificationAudit(Base):
    """One row per transaction-status query or STK callback."""

    __tablename__ = "mpesa_verification_audit"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    organization_id: Mapped[int] = mapped_column(BigIntPK, nullable=False, index=True)
    payment_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("payments.id"), nullable=False, index=True
    )
    source: Mapped[str] = mapped_column(String(20), nullable=False)  # query | callback
    checkout_request_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    result_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    result_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    transaction_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    raw_response: Mapped[dict | None] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"), nullable=True
    )

    queried_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )
