"""
Reply classification, linking and escalation
"""

from .classifier import (
    CLASSIFICATION_RULES,
    EMERGENCY_KEYWORDS,
    ClassificationResult,
    ResponseClassifier,
    ResponseType,
    detect_emergency,
)
from .escalation import (
    Escalation,
    EscalationKind,
    EscalationService,
    InMemoryEscalationLog,
    RedisEscalationLog,
)
from .inquiry import InquiryClassifier, InquiryReply, InquiryResponder, InquiryResult
from .linker import ConfirmationLinker, LinkResult

__all__ = [
    'CLASSIFICATION_RULES',
    'EMERGENCY_KEYWORDS',
    'ClassificationResult',
    'ResponseClassifier',
    'ResponseType',
    'detect_emergency',
    'Escalation',
    'EscalationKind',
    'EscalationService',
    'InMemoryEscalationLog',
    'RedisEscalationLog',
    'InquiryClassifier',
    'InquiryReply',
    'InquiryResponder',
    'InquiryResult',
    'ConfirmationLinker',
    'LinkResult',
]
