import uuid
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from leadflow.schemas.inbound import ConnectionUpdate, ContentKind, InboundEvent, MediaRef, Provider
from leadflow.schemas.tenant_config import TenantAIConfig
from leadflow.services import pipeline_service
from leadflow.services.eligibility_service import GateDecision
from leadflow.services.normalizer_service import NormalizeResult
from leadflow.services.pipeline_service import apply_connection_updates, process_event, process_webhook
from leadflow.services.result import Result

PIPELINE = "leadflow.services.pipeline_service"


def _event(connection, **overrides):
    values = dict(
        tenant_id=connection.tenant_id,
        channel_connection_id=connection.id,
        provider=Provider(connection.provider),
        external_message_id="ABC123",
        sender_phone="5511999990000",
        sender_display_name="Joana",
        content_kind=ContentKind.TEXT,
        text="Quanto custa?",
        occurred_at=datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc),
    )
    values.update(overrides)
    return InboundEvent(**values)


@pytest.fixture
def lead():
    return SimpleNamespace(id=uuid.uuid4(), phone="5511999990000", display_name="Joana", message_count=0)


@pytest.fixture
def conversation():
    return SimpleNamespace(id=uuid.uuid4(), status="open", assigned_owner=None, message_count=0, updated_at=None)


@pytest.fixture
def collaborators(lead, conversation):
    with patch(f"{PIPELINE}.resolve_lead", return_value=lead), patch(
        f"{PIPELINE}.resolve_conversation", return_value=conversation
    ), patch(f"{PIPELINE}.inbound_exists", return_value=False) as exists, patch(
        f"{PIPELINE}.save_inbound", return_value=SimpleNamespace(id=uuid.uuid4())
    ) as save, patch(
        f"{PIPELINE}.record_inbound", return_value=False
    ) as record, patch(
        f"{PIPELINE}.check_eligibility", return_value=(GateDecision.allow(), TenantAIConfig())
    ) as gate, patch(
        f"{PIPELINE}.generate_reply",
        return_value=Result.success(SimpleNamespace(reply="Custa R$ 99")),
    ) as reply, patch(
        f"{PIPELINE}.send_text", return_value=Result.success("3EB0")
    ) as send, patch(
        f"{PIPELINE}.analyze_conversation"
    ) as analyze, patch(
        f"{PIPELINE}.qualify_lead"
    ) as qualify:
        yield SimpleNamespace(
            exists=exists,
            save=save,
            record=record,
            gate=gate,
            reply=reply,
            send=send,
            analyze=analyze,
            qualify=qualify,
        )


class TestProcessEvent:
    def test_stores_then_replies(self, collaborators, db_session, llm, evolution_connection, lead, conversation):
        outcome = process_event(db_session, _event(evolution_connection), evolution_connection, llm)

        assert outcome.stored is True
        assert outcome.ai_replied is True
        assert lead.message_count == 1
        assert lead.last_message == "Quanto custa?"
        assert conversation.message_count == 1
        collaborators.send.assert_called_once_with(evolution_connection, "5511999990000", "Custa R$ 99")
        collaborators.record.assert_called_once()
        collaborators.analyze.assert_called_once()
        collaborators.qualify.assert_not_called()

    def test_duplicate_short_circuits(self, collaborators, db_session, llm, evolution_connection, lead):
        collaborators.save.return_value = None

        outcome = process_event(db_session, _event(evolution_connection), evolution_connection, llm)

        assert outcome.duplicate is True
        assert lead.message_count == 0
        collaborators.gate.assert_not_called()
        collaborators.reply.assert_not_called()
        collaborators.send.assert_not_called()

    def test_denied_gate_stores_without_reply(self, collaborators, db_session, llm, evolution_connection):
        collaborators.gate.return_value = (GateDecision.deny("outside_hours"), TenantAIConfig())

        outcome = process_event(db_session, _event(evolution_connection), evolution_connection, llm)

        assert outcome.stored is True
        assert outcome.ai_replied is False
        assert outcome.skip_reason == "outside_hours"
        collaborators.reply.assert_not_called()

    def test_transfer_request_marks_pending(self, collaborators, db_session, llm, evolution_connection, conversation):
        collaborators.gate.return_value = (GateDecision.deny("transfer_requested", handoff=True), TenantAIConfig())

        process_event(db_session, _event(evolution_connection, text="quero um atendente"), evolution_connection, llm)

        assert conversation.status == "pending"

    def test_reply_failure_keeps_inbound(self, collaborators, db_session, llm, evolution_connection):
        collaborators.reply.return_value = Result.failure("limit", "quota_exceeded")

        outcome = process_event(db_session, _event(evolution_connection), evolution_connection, llm)

        assert outcome.stored is True
        assert outcome.skip_reason == "quota_exceeded"
        collaborators.send.assert_not_called()
        assert db_session.commit.called

    def test_qualifies_every_fifth_message(self, collaborators, db_session, llm, evolution_connection, lead):
        lead.message_count = 4

        process_event(db_session, _event(evolution_connection), evolution_connection, llm)

        collaborators.qualify.assert_called_once()

    def test_learning_counter_failure_is_contained(self, collaborators, db_session, llm, evolution_connection):
        collaborators.record.side_effect = OperationalError("UPDATE", {}, Exception("lock timeout"))

        outcome = process_event(db_session, _event(evolution_connection), evolution_connection, llm)

        assert outcome.stored is True

    def test_audio_is_transcribed_before_storing(self, collaborators, db_session, llm, evolution_connection):
        event = _event(
            evolution_connection,
            content_kind=ContentKind.AUDIO,
            text="[Audio received]",
            media_ref=MediaRef(base64_data="T2dnUw==", mime_type="audio/ogg"),
        )

        process_event(db_session, event, evolution_connection, llm)

        stored_event = collaborators.save.call_args[0][2]
        assert stored_event.text == "I would like a quote"
        assert collaborators.gate.call_args[0][3] == "I would like a quote"

    def test_official_image_uses_graph_download(self, collaborators, db_session, llm, official_connection):
        event = _event(
            official_connection,
            content_kind=ContentKind.IMAGE,
            text="[Image received]",
            media_ref=MediaRef(media_id="m-1", mime_type="image/jpeg"),
        )
        resolved = MediaRef(media_id="m-1", url="https://lookaside.fbsbx.com/m-1", mime_type="image/jpeg")

        with patch(f"{PIPELINE}.with_download_url", return_value=(resolved, {"Authorization": "Bearer graph-token"})), patch(
            f"{PIPELINE}.resolve_image", return_value="[Image: A red sneaker]"
        ) as mock_image:
            process_event(db_session, event, official_connection, llm)

        assert mock_image.call_args[1]["headers"] == {"Authorization": "Bearer graph-token"}
        assert collaborators.save.call_args[0][2].text == "[Image: A red sneaker]"

    def test_retried_audio_is_not_transcribed_again(self, collaborators, db_session, llm, evolution_connection):
        collaborators.exists.return_value = True
        event = _event(
            evolution_connection,
            content_kind=ContentKind.AUDIO,
            text="[Audio received]",
            media_ref=MediaRef(base64_data="T2dnUw==", mime_type="audio/ogg"),
        )

        outcome = process_event(db_session, event, evolution_connection, llm)

        assert outcome.duplicate is True
        llm.transcribe_audio.assert_not_called()
        collaborators.save.assert_not_called()

    def test_text_skips_existence_check(self, collaborators, db_session, llm, evolution_connection):
        process_event(db_session, _event(evolution_connection), evolution_connection, llm)

        collaborators.exists.assert_not_called()

    def test_undelivered_reply_does_not_notify(self, collaborators, db_session, llm, evolution_connection):
        collaborators.send.return_value = Result.failure("Evolution API error: 500", "send_failed")

        with patch(f"{PIPELINE}.ai_response_event", wraps=pipeline_service.ai_response_event) as mock_event:
            outcome = process_event(db_session, _event(evolution_connection), evolution_connection, llm)

        assert outcome.ai_replied is True
        mock_event.assert_not_called()

    def test_delivered_reply_notifies(self, collaborators, db_session, llm, evolution_connection, lead):
        with patch(f"{PIPELINE}.ai_response_event", wraps=pipeline_service.ai_response_event) as mock_event:
            process_event(db_session, _event(evolution_connection), evolution_connection, llm)

        mock_event.assert_called_once()
        assert mock_event.call_args[0][3] == "Custa R$ 99"


class TestApplyConnectionUpdates:
    def test_connected_clears_qr(self, db_session):
        connection = SimpleNamespace(status="qr_pending", qr_code="QR", phone_number=None, updated_at=None)
        db_session.query.return_value.filter.return_value.first.return_value = connection

        applied = apply_connection_updates(
            db_session, [ConnectionUpdate(connection_id=uuid.uuid4(), status="connected", phone_number="5511")]
        )

        assert applied == 1
        assert connection.status == "connected"
        assert connection.qr_code is None
        assert connection.phone_number == "5511"
        db_session.commit.assert_called_once()

    def test_unknown_connection(self, db_session):
        db_session.query.return_value.filter.return_value.first.return_value = None
        assert apply_connection_updates(db_session, [ConnectionUpdate(connection_id=uuid.uuid4(), status="connected")]) == 0
        db_session.commit.assert_not_called()


class TestProcessWebhook:
    def test_ignored(self, db_session, llm):
        with patch(f"{PIPELINE}.normalize", return_value=NormalizeResult.ignored("unknown_format")):
            outcome = process_webhook(db_session, {"x": 1}, llm)
        assert outcome.kind == "ignored"
        assert outcome.reason == "unknown_format"

    def test_counts_outcomes(self, db_session, llm, evolution_connection):
        events = [_event(evolution_connection, external_message_id=str(i)) for i in range(3)]
        db_session.query.return_value.filter.return_value.first.return_value = evolution_connection
        outcomes = [
            pipeline_service.EventOutcome(stored=True, ai_replied=True),
            pipeline_service.EventOutcome(stored=False, duplicate=True),
        ]

        with patch(f"{PIPELINE}.normalize", return_value=NormalizeResult(kind="events", events=events)), patch(
            f"{PIPELINE}.process_event",
            side_effect=[*outcomes, OperationalError("INSERT", {}, Exception("down"))],
        ), patch(f"{PIPELINE}.alert_error") as mock_alert:
            outcome = process_webhook(db_session, {}, llm)

        assert outcome.processed == 1
        assert outcome.ai_replies == 1
        assert outcome.duplicates == 1
        assert outcome.failed == 1
        db_session.rollback.assert_called_once()
        mock_alert.assert_called_once()

    def test_unexpected_error_does_not_drop_rest_of_batch(self, collaborators, db_session, llm, evolution_connection):
        events = [_event(evolution_connection, external_message_id=i) for i in ("A1", "A2")]
        db_session.query.return_value.filter.return_value.first.return_value = evolution_connection
        collaborators.reply.side_effect = [
            ValueError("Expecting value: line 1 column 1 (char 0)"),
            Result.success(SimpleNamespace(reply="Custa R$ 99")),
        ]

        with patch(f"{PIPELINE}.normalize", return_value=NormalizeResult(kind="events", events=events)), patch(
            f"{PIPELINE}.alert_error"
        ) as mock_alert:
            outcome = process_webhook(db_session, {}, llm)

        stored_ids = [c[0][2].external_message_id for c in collaborators.save.call_args_list]
        assert stored_ids == ["A1", "A2"]
        assert outcome.failed == 1
        assert outcome.processed == 1
        assert outcome.ai_replies == 1
        db_session.rollback.assert_called_once()
        mock_alert.assert_called_once()
