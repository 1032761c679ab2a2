"""Built-in migration templates."""

from .award_classifications import AWARD_CLASSIFICATIONS_TEMPLATE
from .calendars import CALENDAR_TEMPLATE
from .interpretation_rules import INTERPRETATION_RULES_TEMPLATE
from .leave_rules import LEAVE_RULES_TEMPLATE
from .pay_codes import PAY_CODES_TEMPLATE
from .payrate_loading import PAYRATE_LOADING_TEMPLATE

DEFAULT_TEMPLATES = (
    PAY_CODES_TEMPLATE,
    LEAVE_RULES_TEMPLATE,
    INTERPRETATION_RULES_TEMPLATE,
    AWARD_CLASSIFICATIONS_TEMPLATE,
    CALENDAR_TEMPLATE,
    PAYRATE_LOADING_TEMPLATE,
)


def register_default_templates(registry) -> int:
    """Register the built-in templates; returns how many were added."""
    for template in DEFAULT_TEMPLATES:
        registry.register_template(template, replace=True)
    return len(DEFAULT_TEMPLATES)


__all__ = [
    "DEFAULT_TEMPLATES",
    "PAY_CODES_TEMPLATE",
    "LEAVE_RULES_TEMPLATE",
    "INTERPRETATION_RULES_TEMPLATE",
    "AWARD_CLASSIFICATIONS_TEMPLATE",
    "CALENDAR_TEMPLATE",
    "PAYRATE_LOADING_TEMPLATE",
    "register_default_templates",
]
