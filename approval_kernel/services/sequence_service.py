"""
SequenceService -- date-scoped document number allocation.

Responsibility:
    Allocates document numbers of the form ``PREFIX-TYPE-YYMMDD-NNN`` from
    one counter row per (sequence type, date).  Also exposes the counters
    for inspection and the audited administrative reset.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by StageEngine.create_workflow and WorkflowService.

Invariants enforced:
    - Counters are incremented with a single atomic
      ``UPDATE ... SET current_counter = current_counter + 1`` inside the
      caller's transaction.  The read-increment-write anti-pattern is
      FORBIDDEN: two allocations for the same (type, date) never return
      the same value.
    - A missing counter row is created at 1 under a savepoint; a
      concurrent creator loses with IntegrityError, rolls the savepoint
      back and falls through to the atomic increment.
    - Counters only move down through ``reset()``, which is admin-only
      and audited.
    - Increments are transactional: a rolled-back caller returns its value.

Failure modes:
    - UnknownSequenceTypeError for types outside the configured set.
    - ForbiddenError / InactiveIdentityError on reset by a non-admin.
    - OperationalError / DBAPIError from the database (mapped to
      StorageError by WorkflowService).

Audit relevance:
    Allocation is logged at DEBUG with the number.  Resets are recorded
    on the ``sequence:TYPE-YYMMDD`` audit chain.
"""

from datetime import date, datetime

from sqlalchemy import Integer, String, UniqueConstraint, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column

from approval_kernel.db.base import Base
from approval_kernel.domain.authorization import require_admin
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.identity import Identity
from approval_kernel.domain.sequence import (
    AllocatedSequence,
    SequenceCounterInfo,
    date_key,
    format_sequence_number,
    pad_counter,
)
from approval_kernel.exceptions import UnknownSequenceTypeError
from approval_kernel.logging_config import get_logger
from approval_kernel.services.auditor_service import AuditorService

logger = get_logger("services.sequence")

DEFAULT_PREFIX = "WFMT"
DEFAULT_SEQUENCE_TYPES: tuple[str, ...] = ("MAF", "PR", "CATTO", "SKU", "PAF")


class SequenceCounter(Base):
    """
    Sequence counter table.

    One row per (sequence_type, sequence_date); ``sequence_date`` is YYMMDD.
    """

    __tablename__ = "sequence_counters"

    __table_args__ = (
        UniqueConstraint("sequence_type", "sequence_date", name="uq_sequence_type_date"),
    )

    sequence_type: Mapped[str] = mapped_column(String(20), nullable=False)
    sequence_date: Mapped[str] = mapped_column(String(6), nullable=False)
    current_counter: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def to_dto(self) -> SequenceCounterInfo:
        return SequenceCounterInfo(
            sequence_type=self.sequence_type,
            sequence_date=self.sequence_date,
            current_counter=self.current_counter,
        )


class SequenceService:
    """
    Service for allocating date-scoped document numbers.

    Contract:
        ``allocate(type, date)`` returns the next counter for that day and
        its formatted number.  The increment is only committed when the
        caller's transaction commits.

    Guarantees:
        - N concurrent allocations for the same key return exactly 1..N.
        - Different (type, date) keys never block each other.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT guarantee gap-free numbers across resets; a reset makes
          earlier numbers allocatable again and the caller decides.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService | None = None,
        clock: Clock | None = None,
        prefix: str = DEFAULT_PREFIX,
        sequence_types: tuple[str, ...] = DEFAULT_SEQUENCE_TYPES,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._auditor = auditor or AuditorService(session, self._clock)
        self._prefix = prefix
        self._sequence_types = tuple(sequence_types)

    @property
    def prefix(self) -> str:
        return self._prefix

    @property
    def sequence_types(self) -> tuple[str, ...]:
        return self._sequence_types

    def _check_type(self, sequence_type: str) -> str:
        if sequence_type not in self._sequence_types:
            raise UnknownSequenceTypeError(sequence_type, self._sequence_types)
        return sequence_type

    def _increment(self, sequence_type: str, sequence_date: str) -> int | None:
        result = self._session.execute(
            update(SequenceCounter)
            .where(
                SequenceCounter.sequence_type == sequence_type,
                SequenceCounter.sequence_date == sequence_date,
            )
            .values(current_counter=SequenceCounter.current_counter + 1)
            .returning(SequenceCounter.current_counter)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none()

    def allocate(
        self,
        sequence_type: str,
        on_date: date | datetime | str | None = None,
    ) -> AllocatedSequence:
        """
        Allocate the next number for ``sequence_type`` on ``on_date``.

        Preconditions:
            - The caller is within an active database transaction.
        Postconditions:
            - The counter row for (type, date) exists and was incremented
              by exactly one; the returned counter is its new value.

        Raises:
            UnknownSequenceTypeError: If the type is not configured.
        """
        self._check_type(sequence_type)
        sequence_date = date_key(on_date if on_date is not None else self._clock.today())

        counter = self._increment(sequence_type, sequence_date)

        if counter is None:
            # First allocation of the day; another writer may race us here.
            savepoint = self._session.begin_nested()
            try:
                self._session.add(
                    SequenceCounter(
                        sequence_type=sequence_type,
                        sequence_date=sequence_date,
                        current_counter=1,
                    )
                )
                self._session.flush()
                savepoint.commit()
                counter = 1
            except IntegrityError:
                logger.debug(
                    "sequence_counter_race_retry",
                    extra={"sequence_type": sequence_type, "sequence_date": sequence_date},
                )
                savepoint.rollback()
                counter = self._increment(sequence_type, sequence_date)
                if counter is None:
                    raise

        allocated = AllocatedSequence(
            sequence_type=sequence_type,
            sequence_date=sequence_date,
            counter=counter,
            padded=pad_counter(counter),
            number=format_sequence_number(self._prefix, sequence_type, sequence_date, counter),
        )
        logger.debug(
            "sequence_allocated",
            extra={"sequence_number": allocated.number, "counter": counter},
        )
        return allocated

    def current_value(
        self,
        sequence_type: str,
        on_date: date | datetime | str | None = None,
    ) -> int | None:
        """Current counter for (type, date), or None if never allocated."""
        self._check_type(sequence_type)
        sequence_date = date_key(on_date if on_date is not None else self._clock.today())
        return self._session.execute(
            select(SequenceCounter.current_counter).where(
                SequenceCounter.sequence_type == sequence_type,
                SequenceCounter.sequence_date == sequence_date,
            )
        ).scalar_one_or_none()

    def list_counters(self, sequence_type: str | None = None) -> list[SequenceCounterInfo]:
        """Counters newest date first, optionally for one type."""
        stmt = select(SequenceCounter)
        if sequence_type is not None:
            self._check_type(sequence_type)
            stmt = stmt.where(SequenceCounter.sequence_type == sequence_type)
        stmt = stmt.order_by(
            SequenceCounter.sequence_date.desc(), SequenceCounter.sequence_type,
        )
        return [c.to_dto() for c in self._session.execute(stmt).scalars().all()]

    def reset(
        self,
        sequence_type: str,
        on_date: date | datetime | str,
        actor: Identity,
    ) -> int | None:
        """
        Set the (type, date) counter back to 0.  Admin only, audited.

        A counter that was never allocated is left absent; the reset is
        still audited.  Returns the previous value (None if absent).

        Raises:
            InactiveIdentityError, ForbiddenError, UnknownSequenceTypeError.
        """
        require_admin(actor, "reset sequence")
        self._check_type(sequence_type)
        sequence_date = date_key(on_date)

        counter = self._session.execute(
            select(SequenceCounter)
            .where(
                SequenceCounter.sequence_type == sequence_type,
                SequenceCounter.sequence_date == sequence_date,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

        previous = counter.current_counter if counter else None
        if counter is not None:
            counter.current_counter = 0
            self._session.flush()

        self._auditor.record_sequence_reset(sequence_type, sequence_date, previous, actor.id)
        logger.warning(
            "sequence_reset",
            extra={
                "sequence_type": sequence_type,
                "sequence_date": sequence_date,
                "previous_value": previous,
            },
        )
        return previous
