"""
Idempotency Guard

Makes sure an external event changes order state at most once, even when
the provider redelivers it or two deliveries race on different workers.

The ledger row and the mutation share one transaction:

    1. INSERT applied_events (source, external_event_id)   -- flushed first
    2. run the mutation (reads the order FOR UPDATE, CAS update)
    3. COMMIT

A second delivery of the same event fails step 1 or step 3 on the primary
key, rolls back, and reports ALREADY_APPLIED. Because both commit together,
a failure anywhere leaves neither behind and the provider's retry is
processed from scratch.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from hubplate.core.exceptions import PersistenceError
from hubplate.models import AppliedEvent, EventSource

logger = logging.getLogger(__name__)

# A mutation returns the outcome label stored on its ledger row
Mutation = Callable[[], Awaitable[str]]


class ApplyOnceStatus(str, enum.Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"


@dataclass
class ApplyOnceResult:
    status: ApplyOnceStatus
    outcome: Optional[str] = None


class IdempotencyGuard:
    """Check-and-record on the applied_events ledger."""

    async def apply_once(
        self,
        session: AsyncSession,
        source: EventSource,
        external_event_id: str,
        mutation: Mutation,
        kind: str,
        order_id: Optional[str] = None,
    ) -> ApplyOnceResult:
        """
        Run `mutation` exactly once for (source, external_event_id).

        ALREADY_APPLIED is not an error; callers acknowledge either way.

        Raises:
            PersistenceError: If the database fails for any other reason
        """
        entry = AppliedEvent(
            source=source,
            external_event_id=external_event_id,
            kind=kind,
            order_id=order_id,
        )
        session.add(entry)

        try:
            await session.flush()
        except IntegrityError:
            await session.rollback()
            logger.info(f"Duplicate event ignored: {source.value}/{external_event_id}")
            return ApplyOnceResult(status=ApplyOnceStatus.ALREADY_APPLIED)
        except DBAPIError as e:
            await session.rollback()
            raise PersistenceError(f"Could not record {source.value}/{external_event_id}") from e

        try:
            outcome = await mutation()
            entry.outcome = outcome
            await session.commit()
        except IntegrityError:
            # A concurrent delivery committed the same key first
            await session.rollback()
            logger.info(f"Duplicate event ignored at commit: {source.value}/{external_event_id}")
            return ApplyOnceResult(status=ApplyOnceStatus.ALREADY_APPLIED)
        except DBAPIError as e:
            await session.rollback()
            raise PersistenceError(f"Could not apply {source.value}/{external_event_id}") from e
        except Exception:
            await session.rollback()
            raise

        return ApplyOnceResult(status=ApplyOnceStatus.APPLIED, outcome=outcome)
