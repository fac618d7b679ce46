"""Request payloads for the cost-alert step (Budgets + CloudWatch).

Pure builders, so the shapes can be asserted without AWS.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from core.domain.models import BudgetPolicy

BILLING_REGION = "us-east-1"
BUDGET_END = datetime(2087, 6, 15, tzinfo=timezone.utc)
ALARM_PERIOD_SECONDS = 21600

COST_TYPES: dict[str, bool] = {
    "IncludeTax": True,
    "IncludeSubscription": True,
    "UseBlended": False,
    "IncludeRefund": False,
    "IncludeCredit": False,
    "IncludeUpfront": True,
    "IncludeRecurring": True,
    "IncludeOtherSubscription": True,
    "IncludeSupport": True,
    "IncludeDiscount": True,
    "UseAmortized": False,
}


def start_of_month(now: datetime | None = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def budget_definition(policy: BudgetPolicy, *, now: datetime | None = None) -> dict[str, Any]:
    return {
        "BudgetName": policy.budget_name,
        "BudgetLimit": {"Amount": f"{policy.budget_limit_amount:.2f}", "Unit": "USD"},
        "TimeUnit": "MONTHLY",
        "BudgetType": "COST",
        "CostTypes": dict(COST_TYPES),
        "TimePeriod": {"Start": start_of_month(now), "End": BUDGET_END},
    }


def _notification(notification_type: str, threshold: float, address: str) -> dict[str, Any]:
    return {
        "Notification": {
            "NotificationType": notification_type,
            "ComparisonOperator": "GREATER_THAN",
            "Threshold": float(threshold),
            "ThresholdType": "PERCENTAGE",
        },
        "Subscribers": [{"SubscriptionType": "EMAIL", "Address": address}],
    }


def budget_notifications(policy: BudgetPolicy) -> list[dict[str, Any]]:
    """Actual spend at each stage plus one forecast notification."""

    out = [_notification("ACTUAL", pct, policy.notify_address) for pct in policy.actual_percentages]
    out.append(_notification("FORECASTED", policy.forecast_percentage, policy.notify_address))
    return out


def billing_alarm(policy: BudgetPolicy, topic_arn: str) -> dict[str, Any]:
    return {
        "AlarmName": policy.alarm_name,
        "AlarmDescription": f"Estimated charges above ${policy.alert_threshold_amount:.2f}",
        "ActionsEnabled": True,
        "AlarmActions": [topic_arn],
        "MetricName": "EstimatedCharges",
        "Namespace": "AWS/Billing",
        "Statistic": "Maximum",
        "Dimensions": [{"Name": "Currency", "Value": "USD"}],
        "Period": ALARM_PERIOD_SECONDS,
        "EvaluationPeriods": 1,
        "Threshold": float(policy.alert_threshold_amount),
        "ComparisonOperator": "GreaterThanThreshold",
        "TreatMissingData": "notBreaching",
    }
