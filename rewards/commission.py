# rewards/commission.py
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from extensions import db
from models import IncomeEntry, IncomeKind, Rank, User
from rewards.atomic import run_atomic
from rewards.config import IncomeConfigHelper
from rewards.errors import InternalError
from rewards.ledger import LedgerHelper
from rewards.pools import IncomePoolHelper
from rewards.settings import PlatformConfig, PlatformSettingsHelper
from rewards.upline import UplineWalker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommissionShare:
    recipient_id: int
    level: int
    percentage: Decimal
    amount: Decimal


@dataclass
class DistributionResult:
    entry_ids: List[int] = field(default_factory=list)
    failed_recipients: List[int] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed_recipients


class CommissionDistributor:
    """
    Pays commissions for one completed activation.

    Each recipient is credited in its own atomic unit: a failure for one
    recipient is logged and skipped, the others still get paid. Re-running
    for the same source transaction pays nobody twice, because every unit
    checks for its own income entry before writing.
    """

    @staticmethod
    def plan(activator_id: int, package_amount: Decimal, rank: Rank, kind: IncomeKind) -> List[CommissionShare]:
        shares = []
        if kind == IncomeKind.LEVEL:
            for member in UplineWalker.walk(activator_id, IncomeConfigHelper.max_depth()):
                pct = IncomeConfigHelper.level_percentage(rank, member.level)
                shares.append(CommissionShare(member.user.id, member.level, pct,
                                              IncomeConfigHelper.calculate_commission(package_amount, pct)))
        elif kind == IncomeKind.REFERRAL:
            for member in UplineWalker.walk(activator_id, 1):
                pct = Decimal(str(rank.referral_percentage))
                shares.append(CommissionShare(member.user.id, 1, pct,
                                              IncomeConfigHelper.calculate_commission(package_amount, pct)))
        elif kind == IncomeKind.GLOBAL:
            pct = Decimal(str(rank.global_percentage))
            shares.append(CommissionShare(activator_id, 0, pct,
                                          IncomeConfigHelper.calculate_commission(package_amount, pct)))
        else:
            raise InternalError(f"Unhandled income kind {kind!r}")
        return [share for share in shares if share.amount > 0]

    @staticmethod
    def distribute(activator_id: int, package_amount: Decimal, rank: Rank, kind,
                   source_transaction_id: int, settings: PlatformConfig = None) -> DistributionResult:
        """Created entry ids, plus the recipients whose unit failed and still need paying."""
        kind = IncomeKind(kind)
        settings = settings or PlatformSettingsHelper.load()
        package_amount = Decimal(str(package_amount))
        outcome = DistributionResult()

        for share in CommissionDistributor.plan(activator_id, package_amount, rank, kind):
            try:
                entry_id = run_atomic(
                    lambda share=share: CommissionDistributor._pay_share(
                        share, kind, activator_id, rank, source_transaction_id, settings),
                    name=f"{kind.value}_commission",
                )
            except IntegrityError:
                logger.info(f"{kind.value} income for tx {source_transaction_id} -> user "
                            f"{share.recipient_id} already written by a concurrent run")
                continue
            except (SQLAlchemyError, InternalError, ValueError) as e:
                logger.error(f"{kind.value} income for tx {source_transaction_id} -> user "
                             f"{share.recipient_id} failed and was skipped: {e}")
                outcome.failed_recipients.append(share.recipient_id)
                continue
            if entry_id is not None:
                outcome.entry_ids.append(entry_id)

        logger.info(f"{kind.value} distribution for tx {source_transaction_id}: {len(outcome.entry_ids)} entries created, "
                    f"{len(outcome.failed_recipients)} failed")
        return outcome

    @staticmethod
    def _pay_share(share: CommissionShare, kind: IncomeKind, activator_id: int, rank: Rank,
                   source_transaction_id: int, settings: PlatformConfig) -> Optional[int]:
        recipient = db.session.get(User, share.recipient_id, with_for_update=True, populate_existing=True)
        if recipient is None:
            logger.error(f"Commission recipient {share.recipient_id} disappeared")
            return None
        if not recipient.is_activated:
            logger.info(f"Skipping inactive recipient {recipient.id} for {kind.value} income")
            return None

        already_paid = db.session.query(IncomeEntry.id).filter_by(
            source_transaction_id=source_transaction_id,
            recipient_id=recipient.id,
            kind=kind.value,
            level=share.level,
        ).first()
        if already_paid:
            logger.info(f"{kind.value} income for tx {source_transaction_id} already paid to {recipient.id}")
            return None

        amount = share.amount
        pool_id = None
        if kind == IncomeKind.LEVEL:
            if not LedgerHelper.credit(recipient.id, available=amount, earnings=amount):
                raise InternalError(f"Could not credit user {recipient.id}")
        else:
            pool_rank = rank if kind == IncomeKind.GLOBAL else recipient.current_rank
            if pool_rank is None:
                logger.info(f"Recipient {recipient.id} holds no rank, no pool for {kind.value} income")
                return None
            pool = IncomePoolHelper.get_open_pool(recipient.id, pool_rank.id)
            if pool is None:
                pool = IncomePoolHelper.open_pool(recipient, pool_rank, settings)
            amount = IncomePoolHelper.add_income(pool, share.amount)
            if amount <= 0:
                return None
            pool_id = pool.id
            LedgerHelper.credit(recipient.id, locked=amount)

        entry = IncomeEntry(
            recipient_id=recipient.id,
            source_user_id=activator_id,
            source_transaction_id=source_transaction_id,
            kind=kind.value,
            level=share.level,
            percentage=share.percentage,
            amount=amount,
            pool_id=pool_id,
        )
        db.session.add(entry)
        db.session.flush()
        return entry.id
