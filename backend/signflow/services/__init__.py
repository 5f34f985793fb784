from signflow.services.audit import AuditService
from signflow.services.executor import DocumentExecutor
from signflow.services.notification import NotificationService
from signflow.services.recorder import SignatureRecorder
from signflow.services.rendering import PdfStampRenderer
from signflow.services.sequencing import SequenceAuthorizer
from signflow.services.side_effects import AuditedDownstreamActions, EffectLedger, SideEffectDispatcher
from signflow.services.signing import EnvelopeSigningService, SubmitResult
from signflow.services.tokens import TokenResolver

__all__ = [
    "AuditService",
    "AuditedDownstreamActions",
    "DocumentExecutor",
    "EffectLedger",
    "EnvelopeSigningService",
    "NotificationService",
    "PdfStampRenderer",
    "SequenceAuthorizer",
    "SideEffectDispatcher",
    "SignatureRecorder",
    "SubmitResult",
    "TokenResolver",
]
