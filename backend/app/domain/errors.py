from dataclasses import dataclass
from typing import Any, List


@dataclass
class DomainError(Exception):
    detail: str
    title: str = "Domain Error"
    type: str = "https://example.com/problems/domain-error"
    errors: List[dict] | None = None

    def __str__(self) -> str:
        return self.detail


@dataclass
class BillingError(DomainError):
    """Billing failure carrying an HTTP status and a stable machine-readable code."""

    status: int = 409
    code: str | None = None
    title: str = "Billing Error"
    type: str = "https://example.com/problems/billing-error"

    def __post_init__(self) -> None:
        if self.errors is None and self.code:
            self.errors = [{"code": self.code}]

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "code": self.code, "detail": self.detail}
