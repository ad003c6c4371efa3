"""ChurnWatch — Risk Policy.

Thresholds shared by the trending and historical classification passes.
Both passes must always take the same RiskThresholds instance.
"""

from dataclasses import dataclass

# Fewer redemptions than this in a month raises "Low Monthly Redemptions"
REDEMPTIONS_THRESHOLD = 10
# "Low Engagement Combo" fires when both of these are undershot
LOW_ENGAGEMENT_COMBO_SUBS_THRESHOLD = 300
LOW_ENGAGEMENT_COMBO_REDEMPTIONS_THRESHOLD = 35
# Average active subscribers below this raises "Low Activity"
LOW_ACTIVITY_SUBS_THRESHOLD = 300
# Fractional month-over-month drops
SPEND_DROP_THRESHOLD = 0.40
REDEMPTIONS_DROP_THRESHOLD = 0.50

# Flag weights and level boundaries
LOW_MONTHLY_REDEMPTIONS_WEIGHT = 1
LOW_ENGAGEMENT_COMBO_WEIGHT = 2
LOW_ACTIVITY_WEIGHT = 1
SPEND_DROP_WEIGHT = 1
REDEMPTIONS_DROP_WEIGHT = 1
HIGH_RISK_MIN_FLAGS = 3
MEDIUM_RISK_MIN_FLAGS = 1

# Months since launch before the combo and drop flags are evaluated
COMBO_MIN_MONTHS_SINCE_LAUNCH = 3
DROP_MIN_MONTHS_SINCE_LAUNCH = 3


@dataclass(frozen=True)
class RiskThresholds:
    redemptions: float = REDEMPTIONS_THRESHOLD
    combo_subscribers: float = LOW_ENGAGEMENT_COMBO_SUBS_THRESHOLD
    combo_redemptions: float = LOW_ENGAGEMENT_COMBO_REDEMPTIONS_THRESHOLD
    low_activity_subscribers: float = LOW_ACTIVITY_SUBS_THRESHOLD
    spend_drop: float = SPEND_DROP_THRESHOLD
    redemptions_drop: float = REDEMPTIONS_DROP_THRESHOLD

    def __post_init__(self):
        for name in ("spend_drop", "redemptions_drop"):
            value = getattr(self, name)
            if not 0 < value <= 1:
                raise ValueError(f"{name} must be a fraction in (0, 1], got {value}")


DEFAULT_THRESHOLDS = RiskThresholds()


def level_for_flag_count(flag_count: int) -> str:
    """Map a weighted flag count to a risk level."""
    if flag_count >= HIGH_RISK_MIN_FLAGS:
        return "high"
    if flag_count >= MEDIUM_RISK_MIN_FLAGS:
        return "medium"
    return "low"
