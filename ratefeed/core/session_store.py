"""
Persistent store for captured provider sessions.

Holds cookies, CSRF tokens and profile metadata per funder. At most one
session per provider is authoritative: saving a new session invalidates
every earlier one in the same atomic write.
"""

import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from .config import Credentials, get_data_dir
from .errors import AuthenticationFailed, ValidationError
from .schema import ProviderCode, Session
from .storage import atomic_write_json

logger = logging.getLogger(__name__)


_PATH_LOCKS: Dict[Path, Any] = {}
_PATH_LOCKS_GUARD = threading.Lock()


def lock_for_path(path: Path):
    """One lock per resolved store file, shared by every store in the process."""
    with _PATH_LOCKS_GUARD:
        return _PATH_LOCKS.setdefault(path.resolve(), threading.RLock())


def _provider_value(provider: Union[ProviderCode, str]) -> str:
    return provider.value if isinstance(provider, ProviderCode) else ProviderCode(provider).value


class SessionStore:
    """
    JSON-file session store.

    All reads and writes go through a lock shared by every SessionStore on
    the same file, and writes replace the file atomically, so a reader never
    observes a half-invalidated provider. Nothing is cached in memory
    between calls. The lock is per process; separate processes sharing a
    store file are not excluded from each other.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        """
        Args:
            path: Store file. Defaults to <data dir>/sessions.json
        """
        self.path = Path(path) if path else get_data_dir() / "sessions.json"
        self._lock = lock_for_path(self.path)

    # === Low-level persistence ===

    def _read(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            with open(self.path) as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Error reading session store {self.path}: {e}")
            return []
        return data.get('sessions', [])

    def _write(self, sessions: List[Dict[str, Any]]) -> None:
        atomic_write_json(self.path, {
            'updated_at': datetime.now(timezone.utc).isoformat(),
            'sessions': sessions,
        })

    def _load_sessions(self) -> List[Session]:
        sessions = []
        for raw in self._read():
            try:
                sessions.append(Session.model_validate(raw))
            except ValueError as e:
                logger.warning(f"Skipping malformed session record: {e}")
        return sessions

    # === Public API ===

    def get_valid_session(
        self,
        provider: Union[ProviderCode, str],
        now: Optional[datetime] = None,
    ) -> Optional[Session]:
        """
        Return the authoritative session for a provider, or None.

        Fails closed: an expired or invalidated session is never returned.
        An expired session found here is marked invalid.
        """
        provider = _provider_value(provider)
        now = now or datetime.now(timezone.utc)

        with self._lock:
            sessions = self._load_sessions()
            current = None
            expired_found = False
            for session in sessions:
                if session.provider.value != provider or not session.valid:
                    continue
                if session.is_expired(now):
                    session.valid = False
                    expired_found = True
                    continue
                if current is None or session.issued_at > current.issued_at:
                    current = session

            if expired_found:
                logger.warning(f"Session for {provider} has expired")
                self._write([s.model_dump(mode='json') for s in sessions])

            return current

    def save_session(
        self,
        provider: Union[ProviderCode, str],
        cookie_jar: str,
        csrf_token: Optional[str] = None,
        profile: Optional[Dict[str, Any]] = None,
        ttl: Union[timedelta, float] = timedelta(hours=8),
    ) -> Session:
        """
        Store a new session, invalidating all earlier ones for the provider.

        Args:
            provider: Provider code
            cookie_jar: Raw Cookie header string
            csrf_token: Anti-forgery token, if the portal uses one
            profile: Provider-specific profile metadata
            ttl: Lifetime as a timedelta or in hours

        Returns:
            The newly stored Session
        """
        provider = _provider_value(provider)
        if not isinstance(ttl, timedelta):
            ttl = timedelta(hours=ttl)

        now = datetime.now(timezone.utc)
        session = Session(
            provider=ProviderCode(provider),
            cookie_jar=cookie_jar,
            csrf_token=csrf_token,
            profile=profile or {},
            issued_at=now,
            expires_at=now + ttl,
            valid=True,
        )

        with self._lock:
            sessions = self._load_sessions()
            invalidated = 0
            for existing in sessions:
                if existing.provider.value == provider and existing.valid:
                    existing.valid = False
                    invalidated += 1
            # A week of invalidated history is kept for inspection
            cutoff = now - timedelta(days=7)
            kept = [s for s in sessions if s.valid or s.issued_at > cutoff]
            kept.append(session)
            self._write([s.model_dump(mode='json') for s in kept])

        logger.info(
            f"Saved {provider} session {session.session_id} "
            f"(expires {session.expires_at:%Y-%m-%d %H:%M}, invalidated {invalidated})"
        )
        return session

    def save_captured(
        self,
        provider: Union[ProviderCode, str],
        capture: Dict[str, Any],
        ttl: Union[timedelta, float] = timedelta(hours=8),
    ) -> Session:
        """
        Store a session captured out-of-band by a browser.

        Args:
            provider: Provider code
            capture: {"csrfToken": ..., "cookies": "<Cookie header>", "profile": {...}}
            ttl: Session lifetime

        Raises:
            ValidationError: if the capture carries no cookies
        """
        cookies = capture.get('cookies')
        if isinstance(cookies, list):
            cookies = '; '.join(f"{c['name']}={c['value']}" for c in cookies if 'name' in c)
        if not cookies:
            raise ValidationError("Captured session has no cookies", provider=str(provider))
        return self.save_session(
            provider,
            cookie_jar=cookies,
            csrf_token=capture.get('csrfToken') or capture.get('csrf_token'),
            profile=capture.get('profile') or {},
            ttl=ttl,
        )

    def invalidate(self, provider: Union[ProviderCode, str], reason: str = "") -> int:
        """
        Mark all sessions for a provider invalid.

        Called when a provider response shows the session was logged out.

        Returns:
            Number of sessions invalidated
        """
        provider = _provider_value(provider)
        with self._lock:
            sessions = self._load_sessions()
            count = 0
            for session in sessions:
                if session.provider.value == provider and session.valid:
                    session.valid = False
                    count += 1
            if count:
                self._write([s.model_dump(mode='json') for s in sessions])

        if count:
            logger.warning(f"Invalidated {count} {provider} session(s){': ' + reason if reason else ''}")
        return count

    def login(
        self,
        provider: Union[ProviderCode, str],
        credentials: Credentials,
        client_factory: Optional[Callable[..., Any]] = None,
    ) -> Session:
        """
        Perform the provider's login handshake and persist the session.

        Args:
            provider: Provider code
            credentials: Portal username/password
            client_factory: Callable returning a provider client bound to
                this store. Defaults to the registry lookup.

        Raises:
            AuthenticationFailed: credentials rejected
            ProtocolStructureError: login page changed shape
        """
        if client_factory is None:
            from .registry import ProviderRegistry
            client_factory = ProviderRegistry.get_client_class(provider)
            if client_factory is None:
                raise AuthenticationFailed(f"No client registered for {provider}", provider=str(provider))

        with client_factory(session_store=self) as client:
            return client.login(credentials)

    def status(self) -> Dict[str, Dict[str, Any]]:
        """Per-provider summary for status polling."""
        summary: Dict[str, Dict[str, Any]] = {}
        now = datetime.now(timezone.utc)
        with self._lock:
            sessions = self._load_sessions()
        for provider in ProviderCode:
            valid = [s for s in sessions if s.provider == provider and s.is_usable(now)]
            latest = max(valid, key=lambda s: s.issued_at) if valid else None
            summary[provider.value] = {
                'valid': latest is not None,
                'session_id': latest.session_id if latest else None,
                'expires_at': latest.expires_at.isoformat() if latest else None,
                'minutes_remaining': int((latest.expires_at - now).total_seconds() // 60) if latest else 0,
            }
        return summary
