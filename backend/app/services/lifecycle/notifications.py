"""
Outbound notifications (email / SMS / ops banner delivery is external).

The lifecycle core only calls these hooks after its own writes have
committed; delivery is fire-and-forget and a failing notifier never undoes a
state change.
"""
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class Notifier:
    """
    Interface for the notification collaborator.

    The default implementation only logs; deployments plug in a delivery
    adapter by subclassing and overriding the hooks.
    """

    def sla_reminder(self, tracker: dict, reminder_number: int) -> None:
        logger.info(
            "SLA reminder %s for tracker %s (%s, case %s)",
            reminder_number, tracker["id"], tracker["sla_class"], tracker.get("case_number"),
        )

    def sla_escalation(self, tracker: dict, overdue_milestones: list) -> None:
        logger.warning(
            "SLA escalation for tracker %s (%s, case %s): overdue %s",
            tracker["id"], tracker["sla_class"], tracker.get("case_number"), overdue_milestones,
        )

    def sla_dormant(self, tracker: dict) -> None:
        logger.warning(
            "SLA tracker %s (%s, case %s) is dormant",
            tracker["id"], tracker["sla_class"], tracker.get("case_number"),
        )

    def bid_placed(self, case: dict, bid: dict) -> None:
        logger.info(
            "Bid %s placed on case %s: amount=%s duration=%s days",
            bid["id"], case["case_number"], bid["bid_amount"], bid["funding_duration_days"],
        )

    def case_dormant(self, case: dict) -> None:
        logger.info("Case %s flagged dormant", case["case_number"])


def deliver(notifier: Optional[Notifier], hook: str, *args) -> bool:
    """
    Fire a notifier hook, logging (never raising) on failure.

    Returns True if the hook ran without error.
    """
    if notifier is None:
        return False
    try:
        getattr(notifier, hook)(*args)
        return True
    except Exception:
        logger.exception("Notification hook %s failed", hook)
        return False
