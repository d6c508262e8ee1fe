from __future__ import annotations

from typing import Callable, List, Optional


AuthListener = Callable[[Optional[str]], None]


class AuthSession:
    """
    Current owner identity plus login/logout notifications.

    The real sign-in flow (OAuth redirect, token refresh) lives outside the
    sync stack; whatever drives it calls `sign_in(owner)` / `sign_out()`.
    Listeners receive the new owner, or None on logout.
    """

    def __init__(self, owner: Optional[str] = None) -> None:
        self._owner = owner or None
        self._listeners: List[AuthListener] = []

    @property
    def owner(self) -> Optional[str]:
        return self._owner

    @property
    def is_logged_in(self) -> bool:
        return self._owner is not None

    def add_listener(self, listener: AuthListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def sign_in(self, owner: str) -> None:
        if not owner:
            raise ValueError("owner is required")
        if owner == self._owner:
            return
        self._owner = owner
        self._emit(owner)

    def sign_out(self) -> None:
        if self._owner is None:
            return
        self._owner = None
        self._emit(None)

    def _emit(self, owner: Optional[str]) -> None:
        for listener in list(self._listeners):
            listener(owner)


class PassphraseSession:
    """Holds the encryption passphrase in memory for the session only.

    Never written to disk or sent anywhere; cleared on logout.
    """

    def __init__(self) -> None:
        self._passphrase: Optional[str] = None

    def get(self) -> Optional[str]:
        return self._passphrase

    def set(self, passphrase: str) -> None:
        if not passphrase:
            raise ValueError("passphrase must not be empty")
        self._passphrase = passphrase

    def clear(self) -> None:
        self._passphrase = None

    @property
    def is_set(self) -> bool:
        return self._passphrase is not None

    def __repr__(self) -> str:
        state = "set" if self._passphrase else "empty"
        return f"PassphraseSession({state})"


__all__ = ["AuthSession", "PassphraseSession"]
