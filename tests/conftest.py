import uuid
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, Mock

import pytest

from leadflow.services.llm import LLMResponse


@pytest.fixture
def db_session():
    """Mock database session (MagicMock so savepoints work as context managers)."""
    return MagicMock()


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    monkeypatch.setenv("QDRANT_API_KEY", "test-key")


@pytest.fixture
def llm():
    provider = Mock()
    provider.generate.return_value = LLMResponse(content="Hello! How can I help?", model="gpt-4o-mini")
    provider.transcribe_audio.return_value = "I would like a quote"
    provider.describe_image.return_value = "A red sneaker"
    return provider


@pytest.fixture
def tenant_id():
    return uuid.uuid4()


@pytest.fixture
def evolution_connection(tenant_id):
    return SimpleNamespace(
        id=uuid.uuid4(),
        tenant_id=tenant_id,
        name="Sales",
        provider="evolution",
        instance_name="sales-1",
        phone_number_id=None,
        api_url="http://evolution:8080",
        api_key="evo-key",
        access_token=None,
        verify_token=None,
    )


@pytest.fixture
def official_connection(tenant_id):
    return SimpleNamespace(
        id=uuid.uuid4(),
        tenant_id=tenant_id,
        name="Support",
        provider="official",
        instance_name=None,
        phone_number_id="1122334455",
        api_url=None,
        api_key=None,
        access_token="graph-token",
        verify_token="verify-me",
    )


def _training(status="active", **overrides):
    values = dict(
        tenant_id=uuid.uuid4(),
        status=status,
        linked_connection_id=None,
        started_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        ready_at=None,
        activated_at=None,
        paused_at=None,
        messages_analyzed=0,
        min_days_required=7,
        min_messages_required=100,
        confidence_score=0,
        faqs_detected=0,
        response_patterns_learned=0,
        company_info_extracted=0,
        objections_learned=0,
        product_info_extracted=0,
        updated_at=None,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


@pytest.fixture
def make_training():
    """Factory for training status rows."""
    return _training
