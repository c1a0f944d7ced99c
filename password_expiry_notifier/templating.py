"""Closed-set ``{{placeholder}}`` substitution for notification templates."""

from __future__ import annotations

import re
from enum import Enum
from typing import Dict, List

from .expiry import DirectoryUser, ExpiryState

_TOKEN_RE = re.compile(r"\{\{\s*([^{}]*?)\s*\}\}")

EXPIRY_DATE_FORMAT = "%B %d, %Y"


class TemplateError(ValueError):
    """Raised when a template references a placeholder that is not recognised."""


class Placeholder(str, Enum):
    DISPLAY_NAME = "user.displayName"
    PRINCIPAL_NAME = "user.userPrincipalName"
    DAYS_UNTIL_EXPIRY = "daysUntilExpiry"
    EXPIRY_DATE = "expiryDate"


def find_placeholders(template: str) -> List[str]:
    return _TOKEN_RE.findall(template or "")


def validate_template(template: str) -> None:
    known = {p.value for p in Placeholder}
    unknown = sorted({token for token in find_placeholders(template) if token not in known})
    if unknown:
        raise TemplateError(f"Unrecognised placeholder(s): {', '.join(unknown)}")


def placeholder_values(user: DirectoryUser, state: ExpiryState) -> Dict[Placeholder, str]:
    expiry_date = state.expiry.strftime(EXPIRY_DATE_FORMAT) if state.expiry and not state.never_expires else "Never"
    return {
        Placeholder.DISPLAY_NAME: user.display_name,
        Placeholder.PRINCIPAL_NAME: user.principal_name,
        Placeholder.DAYS_UNTIL_EXPIRY: str(state.days_remaining),
        Placeholder.EXPIRY_DATE: expiry_date,
    }


def render_template(template: str, values: Dict[Placeholder, str]) -> str:
    def _replace(match: "re.Match[str]") -> str:
        token = match.group(1)
        try:
            placeholder = Placeholder(token)
        except ValueError:
            raise TemplateError(f"Unrecognised placeholder: {{{{{token}}}}}") from None
        return values[placeholder]

    return _TOKEN_RE.sub(_replace, template or "")
