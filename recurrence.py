from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import TYPE_CHECKING, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import desc, or_, select
from sqlalchemy.orm import Session

from config import get_settings
from models import RecurrenceType, Transaction
from periods import add_months

if TYPE_CHECKING:
    from services import TransactionLedger


logger = logging.getLogger(__name__)


class GenerationTemplateError(RuntimeError):
    def __init__(self, template_id: str, cause: BaseException) -> None:
        super().__init__(f"Recurring template {template_id} failed: {cause}")
        self.template_id = template_id


@dataclass(frozen=True)
class GenerationResult:
    generated: int = 0
    skipped: int = 0
    errored: int = 0


def local_now() -> datetime:
    settings = get_settings()
    return datetime.now(ZoneInfo(settings.timezone)).replace(tzinfo=None)


def start_of(moment: datetime) -> datetime:
    return datetime.combine(moment.date(), time.min)


def add_interval(moment: datetime, recurrence_type: RecurrenceType) -> datetime:
    if recurrence_type == RecurrenceType.daily:
        return moment + timedelta(days=1)
    if recurrence_type == RecurrenceType.weekly:
        return moment + timedelta(weeks=1)
    if recurrence_type == RecurrenceType.monthly:
        shifted = add_months(moment.date(), 1)
    elif recurrence_type == RecurrenceType.yearly:
        shifted = add_months(moment.date(), 12)
    else:
        raise ValueError(f"Unsupported recurrence type: {recurrence_type}")
    return datetime.combine(shifted, moment.time())


def next_due(last_occurrence: datetime, recurrence_type: RecurrenceType) -> datetime:
    return start_of(add_interval(last_occurrence, recurrence_type))


class RecurringGenerator:
    """Materializes due occurrences of recurring templates.

    One pass posts at most one occurrence per template. Each occurrence is
    committed in its own unit of work, so a failing template never affects
    the others.
    """

    def __init__(self, session: Session, ledger: TransactionLedger) -> None:
        self.session = session
        self.ledger = ledger

    def active_templates(self, now: datetime) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.recurring.is_(True),
                or_(
                    Transaction.recurrence_end_date.is_(None),
                    Transaction.recurrence_end_date > now,
                ),
            )
            .order_by(Transaction.occurred_at, Transaction.id)
        )
        return list(self.session.scalars(stmt).all())

    def last_occurrence(self, template: Transaction) -> datetime:
        stmt = (
            select(Transaction.occurred_at)
            .where(
                Transaction.recurring.is_(False),
                Transaction.owner_id == template.owner_id,
                Transaction.account_id == template.account_id,
                Transaction.note == template.note,
                Transaction.amount_cents == template.amount_cents,
                Transaction.is_income == template.is_income,
                Transaction.category_id == template.category_id,
                Transaction.transfer == template.transfer,
            )
            .order_by(desc(Transaction.occurred_at))
            .limit(1)
        )
        latest = self.session.execute(stmt).scalar_one_or_none()
        return latest or template.occurred_at

    def due_date(self, template: Transaction, now: datetime) -> Optional[datetime]:
        """The occurrence to post now, or None when nothing is due."""
        due = next_due(self.last_occurrence(template), template.recurrence_type)
        if due > start_of(now):
            return None
        if template.recurrence_end_date and not due < template.recurrence_end_date:
            return None
        return due

    def run_pass(self, now: Optional[datetime] = None) -> GenerationResult:
        now = now or local_now()
        templates = self.active_templates(now)
        if not templates:
            logger.info("recurring_pass: no active templates")
            return GenerationResult()

        template_ids = [template.id for template in templates]
        logger.info(f"recurring_pass: templates={len(template_ids)}")
        generated = skipped = errored = 0
        for template_id in template_ids:
            try:
                posted = self._process(template_id, now)
            except GenerationTemplateError:
                logger.exception(f"recurring_pass: template={template_id} failed")
                errored += 1
                continue
            if posted:
                generated += 1
            else:
                skipped += 1

        result = GenerationResult(generated=generated, skipped=skipped, errored=errored)
        logger.info(
            f"recurring_pass: generated={result.generated} "
            f"skipped={result.skipped} errored={result.errored}"
        )
        return result

    def _process(self, template_id: str, now: datetime) -> bool:
        try:
            template = self.session.get(Transaction, template_id)
            if template is None or not template.recurring:
                return False
            if template.recurrence_type is None:
                logger.warning(
                    f"recurring_pass: template={template_id} has no recurrence type"
                )
                return False

            due = self.due_date(template, now)
            if due is None:
                return False

            logger.info(
                f"recurring_pass: template={template_id} due={due.date().isoformat()}"
            )
            self.ledger.post_occurrence(template, due)
            return True
        except Exception as exc:
            self.session.rollback()
            raise GenerationTemplateError(template_id, exc) from exc
