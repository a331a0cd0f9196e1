from decimal import Decimal, ROUND_HALF_UP

from core.exceptions import InvalidScore
from modules.class_settings.model import ProgressionConfig
from modules.rewards.models import RewardBreakdown


def round_half_up(value) -> int:
    """School rounding (2.5 -> 3), unlike round()'s banker's rounding."""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class RewardCalculator:
    """Pure score -> reward arithmetic. Never touches the database."""

    def __init__(self, config: ProgressionConfig = None):
        self.config = config or ProgressionConfig()

    def compute_reward(self, base_experience: int, base_currency: int, score: float,
                       max_score: float = None) -> RewardBreakdown:
        """
        Scale the activity's base rewards by the score, then apply excellence bonuses.

        Examples (max score 20):
        - 100 XP, 18/20 -> 90 -> x1.2 -> 108
        - 100 XP, 15/20 -> 75 -> x1.1 -> 83 (82.5 rounded up)
        - 100 XP, 10/20 -> 50
        """
        cfg = self.config
        max_score = cfg.max_score if max_score is None else max_score
        if max_score <= 0:
            raise InvalidScore(f"Max score must be positive, got {max_score}")
        if base_experience < 0 or base_currency < 0:
            raise InvalidScore("Base rewards must not be negative")

        if not cfg.grade_proportional_rewards:
            return RewardBreakdown(experience=base_experience, currency=base_currency, percentage=100.0)

        ratio = min(1.0, max(0.0, score / max_score))
        percentage = ratio * 100

        experience = round_half_up(base_experience * percentage / 100)
        currency = round_half_up(base_currency * percentage / 100)

        multiplier = 1.0
        if ratio >= cfg.excellence_ratio:
            multiplier = cfg.excellence_multiplier
        elif ratio >= cfg.good_ratio:
            multiplier = cfg.good_multiplier

        if multiplier != 1.0:
            experience = round_half_up(experience * multiplier)
            currency = round_half_up(currency * multiplier)

        return RewardBreakdown(
            experience=max(0, experience),
            currency=max(0, currency),
            percentage=round(percentage, 2),
            bonus_applied=multiplier != 1.0,
            multiplier=multiplier,
        )
