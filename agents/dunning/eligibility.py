"""Campaign eligibility rules.

Pure functions: no I/O, no clock. The 31-60 and 61-90 tiers both accept
day 60, each campaign is evaluated on its own.
"""

from .dto import Campaign, CampaignType, SendFrequency

DEFAULT_RECURRING_INTERVAL = 10
RECURRING_ANCHOR_DAY = 91
RECURRING_FIRST_DAY = 101


def is_eligible(days_outstanding: int, campaign: Campaign) -> bool:
    """Whether an invoice aged ``days_outstanding`` falls into ``campaign``."""
    kind = campaign.campaign_type
    if kind == CampaignType.OVERDUE_31_60.value:
        return 30 <= days_outstanding <= 60
    if kind == CampaignType.OVERDUE_61_90.value:
        return 60 <= days_outstanding <= 90
    if kind == CampaignType.OVERDUE_91_PLUS.value:
        return days_outstanding >= 90 and campaign.send_frequency == SendFrequency.ONCE.value
    if kind == CampaignType.OVERDUE_91_PLUS_RECURRING.value:
        interval = campaign.recurring_interval_days or DEFAULT_RECURRING_INTERVAL
        return (
            days_outstanding >= RECURRING_FIRST_DAY
            and (days_outstanding - RECURRING_ANCHOR_DAY) % interval == 0
        )
    return False


def day_bucket(campaign: Campaign, today) -> str:
    """Dedup bucket: ``once`` for single-shot tiers, the ISO date for recurring ones."""
    if campaign.is_recurring or campaign.campaign_type == CampaignType.OVERDUE_91_PLUS_RECURRING.value:
        return today.isoformat()
    return SendFrequency.ONCE.value
