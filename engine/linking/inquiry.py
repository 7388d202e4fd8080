"""
Replies to open-ended messages that do not answer any pending followup

An optional InquiryClassifier (typically LLM-backed) may draft the reply.
When it is missing, errors or has nothing to say, the patient gets the
static acknowledgment instead. Emergency detection never depends on it; the
linker runs keyword rules before reaching this module.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from shared.prompt_manager import PromptManager, prompt_manager

logger = logging.getLogger("inquiry-responder")


@dataclass
class InquiryResult:
    """What an inquiry classifier made of a message"""
    intent: str
    confidence: float
    reply_text: Optional[str] = None
    needs_human: bool = False


@dataclass
class InquiryReply:
    text: str
    intent: str
    confidence: float
    source: str  # "classifier" or "static"
    needs_human: bool = False


class InquiryClassifier(ABC):
    """Pluggable classifier for open-ended patient questions"""

    @abstractmethod
    async def classify(self, text: str, patient_id: str) -> Optional[InquiryResult]:
        pass


class InquiryResponder:
    def __init__(
        self,
        classifier: Optional[InquiryClassifier] = None,
        prompts: Optional[PromptManager] = None,
        min_confidence: float = 0.6,
    ):
        self.classifier = classifier
        self.prompts = prompts or prompt_manager
        self.min_confidence = min_confidence

    def static_reply(self) -> InquiryReply:
        return InquiryReply(
            text=self.prompts.load_prompt("acknowledgments", variant="generic"),
            intent="general_inquiry",
            confidence=0.0,
            source="static",
        )

    async def respond(self, patient_id: str, text: str) -> InquiryReply:
        if self.classifier is None:
            return self.static_reply()

        try:
            result = await self.classifier.classify(text, patient_id)
        except Exception as e:
            # Any classifier failure degrades to the static reply
            logger.warning(f"Inquiry classifier failed for patient {patient_id}: {e}")
            return self.static_reply()

        if result is None or not result.reply_text or result.confidence < self.min_confidence:
            reply = self.static_reply()
            if result is not None:
                reply.intent = result.intent
                reply.confidence = result.confidence
                reply.needs_human = True
            return reply

        return InquiryReply(
            text=result.reply_text,
            intent=result.intent,
            confidence=result.confidence,
            source="classifier",
            needs_human=result.needs_human,
        )
