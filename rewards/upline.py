# rewards/upline.py
import logging
from dataclasses import dataclass
from typing import Iterator, List, Optional

from flask import current_app

from extensions import db
from models import User

logger = logging.getLogger(__name__)

# Hard stop for full-chain walks used by the placement check
MAX_CHAIN_LENGTH = 10000


@dataclass(frozen=True)
class UplineMember:
    user: User
    level: int


class UplineWalker:
    """
    Follows sponsor references toward the root, one id lookup per step.

    The sponsor graph is stored as ids only (users.sponsor_id), nothing is
    cached between calls.
    """

    @staticmethod
    def walk(start_user_id: int, max_depth: int) -> Iterator[UplineMember]:
        """
        Yield (user, level) pairs for levels 1..max_depth, level 1 being the direct sponsor.

        The walk truncates at the root, at an orphaned sponsor reference (logged
        as an error) or at max_depth. A repeated id also truncates the walk.
        """
        if max_depth < 1:
            return
        start = db.session.get(User, start_user_id)
        if start is None:
            logger.error(f"Upline walk requested for unknown user {start_user_id}")
            return

        visited = {start.id}
        sponsor_id = start.sponsor_id
        level = 1
        while sponsor_id is not None and level <= max_depth:
            if sponsor_id in visited:
                logger.error(f"Sponsor cycle detected above user {start_user_id} at user {sponsor_id}")
                return
            sponsor = db.session.get(User, sponsor_id)
            if sponsor is None:
                logger.error(f"Orphaned sponsor reference: user {sponsor_id} missing in upline of {start_user_id}")
                return
            visited.add(sponsor.id)
            yield UplineMember(user=sponsor, level=level)
            sponsor_id = sponsor.sponsor_id
            level += 1

    @staticmethod
    def walk_upline(start_user_id: int, max_depth: int = None) -> List[UplineMember]:
        if max_depth is None:
            max_depth = current_app.config.get("LEVEL_INCOME_DEPTH", 6)
        return list(UplineWalker.walk(start_user_id, max_depth))

    @staticmethod
    def find_cycle(sponsor_id: int, new_user_id: Optional[int] = None) -> Optional[int]:
        """
        Check the chain above a prospective sponsor before placing a user under it.

        Returns the id at which the chain revisits itself (or reaches
        ``new_user_id``), otherwise None.
        """
        visited = set()
        current_id = sponsor_id
        steps = 0
        while current_id is not None:
            if current_id in visited or current_id == new_user_id:
                return current_id
            visited.add(current_id)
            steps += 1
            if steps > MAX_CHAIN_LENGTH:
                return current_id
            current_id = db.session.query(User.sponsor_id).filter(User.id == current_id).scalar()
        return None

    @staticmethod
    def get_upline_summary(user_id: int, max_depth: int = None) -> List[dict]:
        return [
            {
                "level": member.level,
                "userId": member.user.id,
                "username": member.user.username,
                "status": member.user.status,
                "rank": member.user.current_rank.code if member.user.current_rank else None,
            }
            for member in UplineWalker.walk_upline(user_id, max_depth)
        ]
