from dataclasses import dataclass, field

from mailsync.controllers.outbound.spam_scorer import RecipientCheck, SpamScoreResult


@dataclass
class DeliverabilityReport:
    spam: SpamScoreResult
    recipients: list[RecipientCheck] = field(default_factory=list)

    @property
    def recipient_warnings(self) -> list[RecipientCheck]:
        return [check for check in self.recipients if not check.is_valid or check.reason]
