import uuid
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from leadflow.schemas.dispatch import DispatchRequest, TaskType
from leadflow.schemas.tenant_config import TenantAIConfig
from leadflow.services.dispatch_service import dispatch
from leadflow.services.eligibility_service import GateDecision
from leadflow.services.result import Result

ELIGIBILITY = "leadflow.services.dispatch_service.check_eligibility"


def _request(task, tenant_id, **payload):
    return DispatchRequest(task=task, tenant_id=tenant_id, payload=payload)


class TestDispatch:
    @pytest.mark.parametrize("task", [TaskType.ANALYZE, TaskType.SENTIMENT])
    @patch("leadflow.services.dispatch_service.analyze_conversation")
    def test_analysis_tasks_skip_gate(self, mock_analyze, task, db_session, llm, tenant_id):
        mock_analyze.return_value = Result.success({"sentiment": "positive"})

        with patch(ELIGIBILITY) as mock_gate:
            response = dispatch(db_session, _request(task, tenant_id, messages=[{"content": "hi"}]), llm)

        mock_gate.assert_not_called()
        assert response.success is True
        assert response.data == {"analysis": {"sentiment": "positive"}}
        assert mock_analyze.call_args[1]["realtime"] is (task == TaskType.SENTIMENT)

    @patch("leadflow.services.dispatch_service.generate_reply")
    def test_chat_denied_by_gate(self, mock_reply, db_session, llm, tenant_id):
        with patch(ELIGIBILITY, return_value=(GateDecision.deny("ai_not_active", "AI is paused"), TenantAIConfig())):
            response = dispatch(
                db_session, _request(TaskType.CHAT, tenant_id, message="hi", conversation_id=str(uuid.uuid4())), llm
            )

        assert response.success is False
        assert response.reason == "ai_not_active"
        mock_reply.assert_not_called()

    def test_transfer_keyword_marks_handoff(self, db_session, llm, tenant_id):
        decision = GateDecision.deny("transfer_requested", handoff=True)
        with patch(ELIGIBILITY, return_value=(decision, TenantAIConfig())):
            response = dispatch(db_session, _request(TaskType.SUGGEST, tenant_id, last_message="human please"), llm)

        assert response.reason == "transfer_requested"
        assert response.data == {"handoff": True}

    @patch("leadflow.services.dispatch_service.generate_reply")
    def test_chat_success(self, mock_reply, db_session, llm, tenant_id):
        conversation_id = uuid.uuid4()
        mock_reply.return_value = Result.success(
            SimpleNamespace(
                reply="Hi!",
                message_id=uuid.uuid4(),
                conversation_id=conversation_id,
                knowledge_used=True,
                rate_limit_remaining=12,
                rate_limit_reset_at=datetime.now(timezone.utc),
            )
        )

        with patch(ELIGIBILITY, return_value=(GateDecision.allow(), TenantAIConfig())):
            response = dispatch(
                db_session, _request(TaskType.CHAT, tenant_id, message="hi", conversation_id=str(conversation_id)), llm
            )

        assert response.success is True
        assert response.data["response"] == "Hi!"
        assert response.data["rate_limit_remaining"] == 12
        assert mock_reply.call_args[0][1].conversation_id == conversation_id

    @patch("leadflow.services.dispatch_service.generate_reply")
    def test_chat_rate_limited_carries_retry_after(self, mock_reply, db_session, llm, tenant_id):
        mock_reply.return_value = Result.failure("Rate limit exceeded", "rate_limited", retry_after=30)

        with patch(ELIGIBILITY, return_value=(GateDecision.allow(), TenantAIConfig())):
            response = dispatch(
                db_session, _request(TaskType.CHAT, tenant_id, message="hi", conversation_id=str(uuid.uuid4())), llm
            )

        assert response.reason == "rate_limited"
        assert response.retry_after == 30

    def test_chat_requires_conversation(self, db_session, llm, tenant_id):
        with patch(ELIGIBILITY, return_value=(GateDecision.allow(), TenantAIConfig())):
            response = dispatch(db_session, _request(TaskType.CHAT, tenant_id, message="hi"), llm)
        assert response.reason == "invalid_request"

    def test_qualify_requires_lead(self, db_session, llm, tenant_id):
        assert dispatch(db_session, _request(TaskType.QUALIFY, tenant_id), llm).reason == "invalid_request"
