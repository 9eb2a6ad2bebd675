"""Pytest fixtures and configuration for mailrelay tests.

Provides common fixtures for configuration, database and seeded records.
"""

import json
import os
from collections.abc import Generator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from mailrelay.config_schema import AppConfig
from mailrelay.db.store import DatabaseStore, Endpoint, InboundEmail


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a minimal valid config.yaml content."""
    return """
schema_version: 1

database:
  path: data/test.db

threading:
  subject_window_days: 30
  min_subject_length: 5

rate_limit:
  enabled: false
"""


@pytest.fixture
def sample_config_dict(data_dir: Path) -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "database": {"path": str(data_dir / "mailrelay.db")},
        "public_base_url": "https://relay.example.com",
        "smtp": {"host": "smtp.test", "port": 2525, "default_from": "relay@example.com"},
        "rate_limit": {"enabled": False},
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Set the MAILRELAY_CONFIG_PATH environment variable."""
    old_value = os.environ.get("MAILRELAY_CONFIG_PATH")
    os.environ["MAILRELAY_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["MAILRELAY_CONFIG_PATH"]
    else:
        os.environ["MAILRELAY_CONFIG_PATH"] = old_value


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
async def store(data_dir: Path) -> DatabaseStore:
    """Return an initialized DatabaseStore in a temp directory."""
    s = DatabaseStore(data_dir / "test.db")
    await s.initialize()
    return s


# ---------------------------------------------------------------------------
# Record builders
# ---------------------------------------------------------------------------


def _address_blob(*entries: tuple[str | None, str]) -> str:
    """Serialize (name, address) pairs the way the ingest API stores them."""
    return json.dumps(
        {
            "text": ", ".join(f"{n} <{a}>" if n else a for n, a in entries),
            "addresses": [{"name": n, "address": a} for n, a in entries],
        }
    )


def _make_email(
    email_id: str,
    user_id: str = "user-1",
    *,
    message_id: str | None = None,
    in_reply_to: str | None = None,
    references: list[str] | None = None,
    subject: str | None = "Quarterly numbers",
    sender: tuple[str | None, str] = ("Alice", "alice@example.com"),
    to: tuple[str | None, str] = (None, "support@relay.test"),
    recipient: str = "support@relay.test",
    date: datetime | None = None,
) -> InboundEmail:
    return InboundEmail(
        id=email_id,
        user_id=user_id,
        message_id=message_id or f"{email_id}@mail.example.com",
        in_reply_to=in_reply_to,
        references=json.dumps(references) if references else None,
        subject=subject,
        date=date or datetime.now(UTC),
        from_data=_address_blob(sender),
        to_data=_address_blob(to),
        recipient=recipient,
        text_body="Hello",
        html_body="<p>Hello</p>",
    )


def _make_endpoint(
    endpoint_id: str,
    user_id: str = "user-1",
    *,
    type: str = "webhook",
    config: dict[str, Any] | None = None,
    is_active: bool = True,
) -> Endpoint:
    if config is None:
        config = {"url": "https://hooks.example.com/in"} if type == "webhook" else {}
    return Endpoint(
        id=endpoint_id,
        user_id=user_id,
        name=f"Endpoint {endpoint_id}",
        type=type,
        config=config,
        is_active=is_active,
    )


@pytest.fixture
def address_blob():
    """Factory for serialized address blobs."""
    return _address_blob


@pytest.fixture
def make_email():
    """Factory for InboundEmail records (not yet saved)."""
    return _make_email


@pytest.fixture
def make_endpoint():
    """Factory for Endpoint records (not yet saved)."""
    return _make_endpoint
