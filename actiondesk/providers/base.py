from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ProviderResult:
    action_type: str
    summary: str
    url: str = ""
    data: dict[str, Any] = field(default_factory=dict)


class ActionProvider(ABC):
    name: str

    @abstractmethod
    def execute(
        self,
        *,
        principal_id: str,
        subject_id: str | None,
        action_type: str,
        payload: dict[str, Any],
    ) -> ProviderResult:
        raise NotImplementedError
