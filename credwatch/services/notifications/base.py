from __future__ import annotations

from typing import Any, Protocol


class NotificationSender(Protocol):
    async def send(self, recipient: str, template_kind: str, payload: dict[str, Any]) -> None:
        ...
