from sqlalchemy import Column, String, Enum, DateTime, Text, BigInteger
from core.timeutils import utcnow
from models.base import Base, BigIntPK, ExtractionStatus


class ExtractionState(Base):
    """
    Tracks incremental extraction state per named pipeline.

    Purpose:
    - Resume extraction from the last committed batch
    - Avoid reprocessing old warehouse rows

    Design:
    - One row per pipeline_id
    - last_watermark holds the ISO-serialized max value of watermark_column
      over committed batches; it never moves backwards
    """
    __tablename__ = "extraction_state"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    pipeline_id = Column(String(200), nullable=False, unique=True, index=True)

    watermark_column = Column(String(100), nullable=False)
    last_watermark = Column(String(64), nullable=True)

    status = Column(Enum(ExtractionStatus), default=ExtractionStatus.IDLE, nullable=False)
    records_processed = Column(BigInteger, default=0, nullable=False)
    error_message = Column(Text, nullable=True)

    last_run_at = Column(DateTime, nullable=True)
    last_success_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
