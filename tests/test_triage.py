"""
Escalation classifier and the health chat turn.
"""
import pytest

import repository
from ai_services import GeminiClient
from conftest import FakeAdvisor, FakeResponse
from triage import (
    BUSY_FALLBACK, EMERGENCY_FALLBACK, KeywordEscalationClassifier, handle_chat_turn,
)


class TestKeywordClassifier:
    @pytest.mark.parametrize("text,nurse_mode,expected", [
        ("I feel great today", False, False),
        ("I am bleeding badly", False, True),
        ("hello", True, True),
        ("SEVERE headache since morning", False, True),
        ("My sister is in HOSPITAL", False, True),
        ("", False, False),
        ("what vitamins should I take", False, False),
    ])
    def test_classification(self, text, nurse_mode, expected):
        assert KeywordEscalationClassifier().classify(text, nurse_mode) is expected

    def test_substring_match_has_no_negation_awareness(self):
        assert KeywordEscalationClassifier().classify("no pain at all", False) is True

    def test_custom_keywords(self):
        classifier = KeywordEscalationClassifier(["Chest"])
        assert classifier.classify("tight chest", False) is True
        assert classifier.classify("bleeding", False) is False


class AlwaysEscalate:
    def classify(self, text, nurse_mode):
        return True


class GatewayErrorSession:
    """Answers every call with a 200 HTML page instead of JSON."""

    def __init__(self):
        self.posts = 0

    def post(self, url, json=None, headers=None, timeout=None):
        self.posts += 1
        return FakeResponse(200, None, "<html><body>502 Bad Gateway</body></html>")


class TestChatTurn:
    def test_calm_turn_is_not_persisted(self, store, fake_bin):
        advisor = FakeAdvisor("Try some yoga.")
        turn = handle_chat_turn(store, [], "Any tips for sleep?", False, advisor)

        assert turn.escalated is False
        assert turn.persona == "model"
        assert turn.reply.text == "Try some yoga."
        assert turn.switch_tab is None
        assert turn.audit_message_id is None
        assert fake_bin.puts == []
        assert advisor.calls == [("Any tips for sleep?", False)]

    def test_keyword_escalates_switches_tab_and_logs(self, store):
        advisor = FakeAdvisor("Please go to the nearest clinic.")
        turn = handle_chat_turn(store, [], "I have a high fever", False, advisor, active_tab="ai")

        assert turn.escalated is True
        assert turn.persona == "nurse"
        assert turn.reply.role == "nurse"
        assert turn.switch_tab == "nurse"
        assert advisor.calls == [("I have a high fever", True)]

        logged = repository.list_nurse_messages(store)
        assert len(logged) == 1
        assert logged[0].id == turn.audit_message_id
        assert logged[0].is_escalated is True
        assert logged[0].is_saved is True
        assert "I have a high fever" in logged[0].text
        assert "Please go to the nearest clinic." in logged[0].text

    def test_nurse_tab_does_not_switch_again(self, store):
        turn = handle_chat_turn(store, [], "hello", True, FakeAdvisor(), active_tab="nurse")

        assert turn.escalated is True
        assert turn.switch_tab is None
        assert len(repository.list_nurse_messages(store)) == 1

    def test_failed_ai_call_on_escalated_turn(self, store):
        turn = handle_chat_turn(store, [], "I am bleeding", False, FakeAdvisor(fail=True))

        assert turn.reply.text == EMERGENCY_FALLBACK
        assert turn.escalated is True
        logged = repository.list_nurse_messages(store)
        assert EMERGENCY_FALLBACK in logged[0].text

    def test_failed_ai_call_on_calm_turn(self, store, fake_bin):
        turn = handle_chat_turn(store, [], "skincare ideas", False, FakeAdvisor(fail=True))

        assert turn.reply.text == BUSY_FALLBACK
        assert turn.escalated is False
        assert fake_bin.puts == []

    def test_classifier_is_injectable(self, store):
        turn = handle_chat_turn(store, [], "skincare ideas", False, FakeAdvisor(), classifier=AlwaysEscalate())
        assert turn.escalated is True

    def test_non_json_ai_reply_still_gets_emergency_fallback_and_audit(self, store):
        session = GatewayErrorSession()
        advisor = GeminiClient(api_key="k", session=session)

        turn = handle_chat_turn(store, [{"role": "user"}], "I am bleeding badly", False, advisor)

        assert session.posts == 2
        assert turn.reply.text == EMERGENCY_FALLBACK
        logged = repository.list_nurse_messages(store)
        assert len(logged) == 1
        assert logged[0].is_escalated is True
        assert EMERGENCY_FALLBACK in logged[0].text
