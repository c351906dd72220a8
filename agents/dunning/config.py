"""Per-run configuration for the dunning engine.

Built once per invocation from ``Settings`` and the ``app_settings`` table
so every component of a run sees the same values.
"""

from dataclasses import asdict, dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.engine import Engine

from backend.core.cache_store import get_app_setting, parse_flag, utcnow
from backend.core.config import Settings, settings as default_settings

from .dto import TriggeredBy

TEST_MODE_KEY = "automation_test_mode"
TEST_EMAIL_KEY = "automation_test_email"
SENDER_EMAIL_KEY = "automation_sender_email"


@dataclass(frozen=True)
class RunConfiguration:
    """Immutable settings for one dunning run.

    ``test_mode`` routes the run to ``is_test`` schedule rows, caps scheduling
    and sending, and redirects recipients to ``test_email`` when one is set.
    """

    triggered_by: str
    test_mode: bool
    now: datetime
    test_email: Optional[str] = None
    global_test_mode: bool = False

    # Sender identity
    sender_email: str = ""
    sender_name: str = "Accounts Receivable"
    company_name: str = ""

    # Safety limits
    daily_limit: int = 500
    hourly_limit: int = 50
    cooldown_hours: int = 24
    send_max_attempts: int = 3
    test_mode_cap: int = 5
    failure_warn_threshold: int = 3

    # Links
    public_base_url: str = "http://localhost:8000"
    opt_out_hmac_key: str = ""

    @property
    def today(self) -> date:
        return self.now.date()

    @classmethod
    def load(
        cls,
        engine: Engine,
        *,
        triggered_by: str = TriggeredBy.MANUAL.value,
        test_mode: bool = False,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> "RunConfiguration":
        """Create the run configuration.

        Args:
            engine: Cache store engine (reads ``app_settings``)
            triggered_by: scheduler, manual, api or cli
            test_mode: Requested test mode
            settings: Settings instance (defaults to the global one)
            clock: Time source for ``now``

        Returns:
            Configured instance; a scheduler run is forced into test mode
            while the global test-mode flag is on
        """
        s = settings or default_settings
        with engine.connect() as conn:
            global_test_mode = parse_flag(get_app_setting(conn, TEST_MODE_KEY))
            test_email = (get_app_setting(conn, TEST_EMAIL_KEY) or "").strip().lower() or None
            sender_override = (get_app_setting(conn, SENDER_EMAIL_KEY) or "").strip()

        if triggered_by == TriggeredBy.SCHEDULER.value and global_test_mode:
            test_mode = True

        return cls(
            triggered_by=triggered_by,
            test_mode=bool(test_mode),
            now=(clock or utcnow)(),
            test_email=test_email,
            global_test_mode=global_test_mode,
            sender_email=sender_override or s.SENDER_EMAIL,
            sender_name=s.SENDER_NAME,
            company_name=s.COMPANY_NAME,
            daily_limit=s.DAILY_EMAIL_LIMIT,
            hourly_limit=s.HOURLY_EMAIL_LIMIT,
            cooldown_hours=s.EMAIL_COOLDOWN_HOURS,
            send_max_attempts=s.SEND_MAX_ATTEMPTS,
            test_mode_cap=s.TEST_MODE_CAP,
            failure_warn_threshold=s.FAILURE_WARN_THRESHOLD,
            public_base_url=s.PUBLIC_BASE_URL.rstrip("/"),
            opt_out_hmac_key=s.OPT_OUT_HMAC_KEY,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["now"] = self.now.isoformat()
        data.pop("opt_out_hmac_key")
        return data
