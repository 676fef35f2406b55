from __future__ import annotations


class FatalScanError(RuntimeError):
    """The expired-appel query failed; nothing was mutated."""


class SessionCloseError(RuntimeError):
    def __init__(self, appel_id: int, message: str) -> None:
        super().__init__(message)
        self.appel_id = int(appel_id)
        self.message = str(message)

    def __str__(self) -> str:
        return f'appel {self.appel_id}: {self.message}'
