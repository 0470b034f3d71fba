# rewards/config.py
from decimal import Decimal, ROUND_DOWN
from typing import Dict, Any, List

from flask import current_app

from extensions import db
from models import Rank


CENT = Decimal("0.01")


def quantize_money(amount: Decimal) -> Decimal:
    return Decimal(str(amount)).quantize(CENT, rounding=ROUND_DOWN)


class IncomeConfigHelper:
    """
    Commission configuration.

    Level income: L1 50%, L2 10%, L3 5%, L4 3%, L5 2%, L6 1%. Each percentage
    applies to the same package amount, they are not taken from a shrinking remainder.
    Referral income (sponsor pool) 50%, global income (activator's own pool) 10%.
    """

    LEVEL_PERCENTAGES = {
        1: Decimal("50"),
        2: Decimal("10"),
        3: Decimal("5"),
        4: Decimal("3"),
        5: Decimal("2"),
        6: Decimal("1"),
    }
    REFERRAL_PERCENTAGE = Decimal("50")
    GLOBAL_PERCENTAGE = Decimal("10")
    MAX_LEVEL = 6

    # (code, name, activation amount) in ladder order
    DEFAULT_RANKS = [
        ("azurite", "Azurite", Decimal("5")),
        ("pearl", "Pearl", Decimal("10")),
        ("ruby", "Ruby", Decimal("20")),
        ("emerald", "Emerald", Decimal("40")),
        ("sapphire", "Sapphire", Decimal("80")),
        ("diamond", "Diamond", Decimal("160")),
        ("double_diamond", "Double Diamond", Decimal("320")),
        ("triple_diamond", "Triple Diamond", Decimal("640")),
        ("crown", "Crown", Decimal("1280")),
        ("royal_crown", "Royal Crown", Decimal("2560")),
    ]

    @staticmethod
    def max_depth() -> int:
        return int(current_app.config.get("LEVEL_INCOME_DEPTH", IncomeConfigHelper.MAX_LEVEL))

    @staticmethod
    def pool_cap(activation_amount: Decimal) -> Decimal:
        multiplier = Decimal(str(current_app.config.get("POOL_CAP_MULTIPLIER", 100)))
        return quantize_money(Decimal(str(activation_amount)) * multiplier)

    @staticmethod
    def level_percentage(rank: Rank, level: int) -> Decimal:
        """Percentage for an upline level, falling back to the platform schedule."""
        table = rank.level_table() if rank is not None else {}
        if table:
            return table.get(level, Decimal("0"))
        return IncomeConfigHelper.LEVEL_PERCENTAGES.get(level, Decimal("0"))

    @staticmethod
    def calculate_commission(package_amount: Decimal, percentage: Decimal) -> Decimal:
        return quantize_money(Decimal(str(package_amount)) * Decimal(str(percentage)) / Decimal("100"))

    @staticmethod
    def get_distribution_summary(rank: Rank = None) -> Dict[str, Any]:
        distribution = {}
        total = Decimal("0")
        for level in range(1, IncomeConfigHelper.MAX_LEVEL + 1):
            pct = IncomeConfigHelper.level_percentage(rank, level)
            distribution[level] = {"percentage": float(pct), "percentage_display": f"{pct}%"}
            total += pct
        return {
            "distribution": distribution,
            "total_level_percentage": float(total),
            "referral_percentage": float(rank.referral_percentage if rank else IncomeConfigHelper.REFERRAL_PERCENTAGE),
            "global_percentage": float(rank.global_percentage if rank else IncomeConfigHelper.GLOBAL_PERCENTAGE),
            "max_level": IncomeConfigHelper.MAX_LEVEL,
        }


# ==========================================================
#                  RANK CATALOGUE
# ==========================================================
class RankCatalog:

    @staticmethod
    def ordered() -> List[Rank]:
        return Rank.query.order_by(Rank.order_index.asc()).all()

    @staticmethod
    def get_by_code(code: str):
        if not code:
            return None
        return Rank.query.filter_by(code=str(code).strip().lower()).first()

    @staticmethod
    def next_rank(current: Rank = None):
        """The rank directly after ``current`` (the first rank when ``current`` is None)."""
        query = Rank.query.filter(Rank.is_enabled.is_(True))
        if current is not None:
            query = query.filter(Rank.order_index > current.order_index)
        return query.order_by(Rank.order_index.asc()).first()

    @staticmethod
    def position(rank: Rank) -> int:
        """1-based position of a rank within the ladder."""
        return Rank.query.filter(Rank.order_index <= rank.order_index).count()

    @staticmethod
    def seed_default_ranks() -> int:
        """Insert any missing default ranks. Returns how many were created."""
        created = 0
        level_table = {str(k): str(v) for k, v in IncomeConfigHelper.LEVEL_PERCENTAGES.items()}
        for index, (code, name, amount) in enumerate(IncomeConfigHelper.DEFAULT_RANKS, start=1):
            if Rank.query.filter_by(code=code).first():
                continue
            db.session.add(Rank(
                code=code,
                name=name,
                order_index=index,
                activation_amount=amount,
                referral_percentage=IncomeConfigHelper.REFERRAL_PERCENTAGE,
                global_percentage=IncomeConfigHelper.GLOBAL_PERCENTAGE,
                level_percentages=level_table,
            ))
            created += 1
        db.session.commit()
        return created
