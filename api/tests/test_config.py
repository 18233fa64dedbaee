"""Tests for api/api/config.py"""

from __future__ import annotations

import pytest
from api.config import APISettings, IdempotencyBackend, PlatformEnv
from billing_engine.pricing import Plan


class TestAPISettings:
    def test_defaults(self) -> None:
        settings = APISettings(_env_file=None)

        assert settings.platform_env is PlatformEnv.DEV
        assert settings.idempotency_backend is IdempotencyBackend.DATABASE
        assert settings.app_identifier == "valuquick"
        assert settings.trial_report_limit == 5
        assert settings.payments_configured is False

    def test_env_prefix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("API_RAZORPAY_KEY_ID", "rzp_live_1")
        monkeypatch.setenv("API_RAZORPAY_KEY_SECRET", "s3cret")
        monkeypatch.setenv("API_IDEMPOTENCY_BACKEND", "memory")

        settings = APISettings(_env_file=None)

        assert settings.payments_configured is True
        assert settings.razorpay_key_secret.get_secret_value() == "s3cret"
        assert "s3cret" not in repr(settings)
        assert settings.idempotency_backend is IdempotencyBackend.MEMORY

    def test_plan_lookup(self) -> None:
        settings = APISettings(
            _env_file=None,
            razorpay_plan_halfyearly="plan_h",
            razorpay_seat_plan_yearly="plan_sy",
        )

        assert settings.plan_id(Plan.HALFYEARLY) == "plan_h"
        assert settings.plan_id(Plan.MONTHLY) == ""
        assert settings.seat_plan_id(Plan.YEARLY) == "plan_sy"

    def test_wildcard_origin_with_credentials_rejected(self) -> None:
        with pytest.raises(ValueError, match="wildcard origins"):
            APISettings(_env_file=None, cors_origins=["*"], cors_allow_credentials=True)
