"""
Extraction state (watermark) management per named pipeline
"""

from typing import Any, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from core.database import is_disconnect
from core.exceptions import CheckpointError, StoreConnectionError
from core.timeutils import format_watermark, parse_watermark, utcnow
from models.base import ExtractionStatus
from models.extraction_state import ExtractionState
import logging

logger = logging.getLogger(__name__)


class ExtractionStateStore:
    """
    Read and advance ExtractionState rows.

    Responsibilities:
    - Create the state row on a pipeline's first run
    - Advance the watermark after each committed batch, never backwards
    - Track status and cumulative rows processed
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def get(self, pipeline_id: str) -> Optional[ExtractionState]:
        result = await self.db.execute(
            select(ExtractionState).where(ExtractionState.pipeline_id == pipeline_id)
        )
        return result.scalar_one_or_none()

    async def get_watermark(self, pipeline_id: str) -> Any:
        """Parsed last watermark, or None for a pipeline that never committed"""
        state = await self.get(pipeline_id)
        if state is None:
            return None
        return parse_watermark(state.last_watermark)

    async def start(self, pipeline_id: str, watermark_column: str) -> ExtractionState:
        """Mark the pipeline running, creating its state row if needed"""
        try:
            state = await self.get(pipeline_id)
            if state is None:
                state = ExtractionState(
                    pipeline_id=pipeline_id,
                    watermark_column=watermark_column,
                    records_processed=0,
                )
                self.db.add(state)
                logger.info(f"Created extraction state for pipeline {pipeline_id}")
            elif state.watermark_column != watermark_column:
                logger.warning(
                    f"Pipeline {pipeline_id} watermark column changed "
                    f"{state.watermark_column} -> {watermark_column}; resetting watermark"
                )
                state.watermark_column = watermark_column
                state.last_watermark = None

            state.status = ExtractionStatus.RUNNING
            state.last_run_at = utcnow()
            state.error_message = None
            await self.db.commit()
            return state
        except SQLAlchemyError as e:
            await self.db.rollback()
            error_cls = StoreConnectionError if is_disconnect(e) else CheckpointError
            raise error_cls(
                "Failed to start extraction state",
                context={"pipeline_id": pipeline_id, "operation": "write"},
                original_exception=e
            )

    async def record_batch(self, pipeline_id: str, watermark: Any, rows: int) -> ExtractionState:
        """
        Advance the watermark after a committed batch.

        A watermark lower than the stored one is ignored (monotonic).
        """
        state = await self.get(pipeline_id)
        if state is None:
            raise CheckpointError(
                "Extraction state missing; call start() first",
                context={"pipeline_id": pipeline_id, "watermark": watermark}
            )

        new_value = format_watermark(watermark)
        current = parse_watermark(state.last_watermark)
        if watermark is not None and (current is None or watermark > current):
            state.last_watermark = new_value
        elif watermark is not None and watermark < current:
            logger.warning(
                f"Ignoring watermark regression for {pipeline_id}: {current} -> {watermark}"
            )

        state.records_processed = (state.records_processed or 0) + rows
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            error_cls = StoreConnectionError if is_disconnect(e) else CheckpointError
            raise error_cls(
                "Failed to record extraction batch",
                context={"pipeline_id": pipeline_id, "watermark": new_value, "operation": "write"},
                original_exception=e
            )
        return state

    async def finish(self, pipeline_id: str, status: ExtractionStatus, error_message: Optional[str] = None):
        state = await self.get(pipeline_id)
        if state is None:
            return None
        state.status = status
        state.error_message = error_message
        if status == ExtractionStatus.COMPLETED:
            state.last_success_at = utcnow()
        await self.db.commit()
        return state
