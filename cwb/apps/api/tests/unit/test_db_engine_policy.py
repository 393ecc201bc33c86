"""Engine builder pool policy."""

import pytest
from sqlalchemy import NullPool, text

from cwb_api.db.engine import _mask_password, build_engine


def test_default_pool_is_nullpool(monkeypatch):
    monkeypatch.delenv("CWB_DB_POOL", raising=False)

    engine = build_engine("sqlite://")

    assert isinstance(engine.pool, NullPool)
    with engine.connect() as conn:
        assert conn.execute(text("SELECT 1")).scalar_one() == 1


def test_unknown_pool_mode_is_rejected(monkeypatch):
    monkeypatch.setenv("CWB_DB_POOL", "bogus")

    with pytest.raises(ValueError, match="CWB_DB_POOL"):
        build_engine("sqlite://")


def test_url_required(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)

    with pytest.raises(ValueError, match="DATABASE_URL"):
        build_engine()


def test_password_masked_for_logs():
    masked = _mask_password("postgresql://cwb_user:s3cret@db:5432/cwb")

    assert masked == "postgresql://cwb_user:***@db:5432/cwb"
