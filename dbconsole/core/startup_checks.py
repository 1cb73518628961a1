"""Configuration checks run once before the console accepts requests.

Every environment needs a backend URL template that renders. Production
and staging additionally refuse settings that would let cookies leak, let
them be forged after a restart, or route logins through shared
credentials.
"""

from typing import Callable, List, Tuple

from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError

from dbconsole.config import Settings
from dbconsole.core.logging import get_logger

logger = get_logger(__name__)

STRICT_ENVIRONMENTS = frozenset({"production", "staging"})


class ProductionConfigError(Exception):
    """Settings are unsafe for the configured environment."""


def _render_backend_url(settings: Settings) -> URL:
    return make_url(settings.backend_url.format(database=settings.default_database))


_ProductionCheck = Tuple[Callable[[Settings, URL], bool], str]

# Each predicate returns True when the settings are acceptable
_PRODUCTION_CHECKS: List[_ProductionCheck] = [
    (
        lambda s, url: bool(s.cookie_key),
        "COOKIE_KEY must be set; a generated key changes on restart and differs between workers",
    ),
    (
        lambda s, url: s.cookie_secure,
        "COOKIE_SECURE must be true so session and identity cookies only travel over TLS",
    ),
    (
        lambda s, url: not (url.username or url.password),
        "BACKEND_URL must not embed credentials; connections authenticate as the logged-in role",
    ),
    (
        lambda s, url: url.get_backend_name() == "postgresql",
        "BACKEND_URL must point at PostgreSQL",
    ),
]


def validate_production_settings(settings: Settings) -> List[str]:
    """Return every production violation, empty when the settings are fine."""
    url = _render_backend_url(settings)
    return [message for check, message in _PRODUCTION_CHECKS if not check(settings, url)]


def run_startup_validations(settings: Settings) -> None:
    try:
        _render_backend_url(settings)
    except (ArgumentError, KeyError, ValueError) as exc:
        raise ProductionConfigError(f"BACKEND_URL is not a valid SQLAlchemy URL template: {exc}") from exc

    if settings.environment not in STRICT_ENVIRONMENTS:
        if not settings.cookie_key:
            logger.warning("COOKIE_KEY not set, cookies will not survive a restart")
        return

    errors = validate_production_settings(settings)
    if errors:
        logger.error("Refusing to start", data={"environment": settings.environment, "errors": errors})
        raise ProductionConfigError("Unsafe configuration:\n" + "\n".join(f"  - {e}" for e in errors))
    logger.info("Configuration checks passed", data={"environment": settings.environment})
