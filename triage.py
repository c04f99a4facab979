"""
Health chat escalation.

A turn escalates when the conversation is pinned to the nurse persona or the
message mentions any emergency keyword. The decision is made before the AI
call, so it also picks the fallback text when the call fails. Every
escalated turn is written to the nurse log without asking the user.
"""
import logging
from typing import Protocol, Iterable, List, Dict, Optional

from pydantic import BaseModel, Field

from ai_services import AdviceReply, AIServiceError, GroundingSource
from config import EMERGENCY_HOTLINE
from database import DocumentStore
from repository import save_nurse_message
from schemas import Chatmessage

logger = logging.getLogger(__name__)

ESCALATION_KEYWORDS = (
    "bleeding", "emergency", "pain", "suicide", "severe", "pregnant", "miscarriage",
    "lump", "fever", "blood", "hurt", "sick", "hospital",
)

EMERGENCY_FALLBACK = f"Network connection weak. Please call {EMERGENCY_HOTLINE} for immediate help."
BUSY_FALLBACK = "We are experiencing high traffic right now. Please try again in a moment."


class EscalationClassifier(Protocol):
    def classify(self, text: str, nurse_mode: bool) -> bool:
        ...


class KeywordEscalationClassifier:
    """Case-insensitive substring match; no stemming, no negation handling."""

    def __init__(self, keywords: Iterable[str] = ESCALATION_KEYWORDS):
        self.keywords = tuple(k.lower() for k in keywords)

    def classify(self, text: str, nurse_mode: bool) -> bool:
        if nurse_mode:
            return True
        lowered = (text or "").lower()
        return any(k in lowered for k in self.keywords)


class HealthAdvisor(Protocol):
    def health_advice(self, history: List[Dict[str, str]], message: str, escalated: bool) -> AdviceReply:
        ...


class ChatTurn(BaseModel):
    reply: Chatmessage
    escalated: bool
    persona: str
    switch_tab: Optional[str] = None
    sources: List[GroundingSource] = Field(default_factory=list)
    audit_message_id: Optional[str] = None


default_classifier = KeywordEscalationClassifier()


def handle_chat_turn(
    store: DocumentStore,
    history: List[Dict[str, str]],
    message: str,
    nurse_mode: bool,
    advisor: HealthAdvisor,
    active_tab: str = "ai",
    classifier: EscalationClassifier = default_classifier,
) -> ChatTurn:
    escalated = classifier.classify(message, nurse_mode)
    persona = "nurse" if escalated else "model"

    sources: List[GroundingSource] = []
    try:
        advice = advisor.health_advice(history, message, escalated)
        text, sources = advice.text, advice.sources
    except AIServiceError as e:
        logger.warning("Health advice unavailable: %s", e)
        text = EMERGENCY_FALLBACK if escalated else BUSY_FALLBACK

    reply = Chatmessage(role=persona, text=text, is_escalated=escalated or None)
    turn = ChatTurn(
        reply=reply,
        escalated=escalated,
        persona=persona,
        switch_tab="nurse" if escalated and active_tab != "nurse" else None,
        sources=sources,
    )

    if escalated:
        audit = Chatmessage(
            role="nurse",
            text=f"USER: {message}\n\nREPLY: {text}",
            is_escalated=True,
            is_saved=True,
        )
        turn.audit_message_id = save_nurse_message(store, audit).id
        logger.info("Escalated health chat turn logged as %s", turn.audit_message_id)

    return turn
