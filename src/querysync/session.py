"""Session gate: identity tracking, credential-loss handling and policies.

This module provides:
- SessionGate: the process-wide session state machine
- PolicyRegistry / Policy: named authorization predicates
- Navigator: the collaborator asked to redirect to the login boundary
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from typing import Any, Protocol, runtime_checkable

from querysync.errors import (
    AccessPolicyError,
    ErrorKind,
    TransportError,
    classify_exception,
)
from querysync.store import CacheStore
from querysync.transport import Transport
from querysync.types import Session, SessionStatus, User

logger = logging.getLogger(__name__)

PolicyPredicate = Callable[[User | None, Any], bool]
SessionListener = Callable[[Session], None]


@runtime_checkable
class Navigator(Protocol):
    """Navigation collaborator owned by the UI layer."""

    def redirect_to_login(self) -> None:
        """Send the user to the login boundary."""
        ...


class LoggingNavigator:
    """Navigator used when no UI is attached; only logs the redirect."""

    def redirect_to_login(self) -> None:
        logger.warning("Redirect to login requested")


@dataclass(frozen=True, slots=True)
class Policy:
    """A named, stateless authorization predicate."""

    name: str
    predicate: PolicyPredicate
    requires_identity: bool = True

    def evaluate(self, identity: User | None, context: Any = None) -> bool:
        if self.requires_identity and identity is None:
            return False
        return bool(self.predicate(identity, context))


class PolicyRegistry:
    """Policies registered once at startup, immutable after freeze()."""

    def __init__(self, policies: Mapping[str, PolicyPredicate] | None = None) -> None:
        self._policies: dict[str, Policy] = {}
        self._frozen = False
        for name, predicate in (policies or {}).items():
            self.register(name, predicate)

    def __contains__(self, name: object) -> bool:
        return name in self._policies

    def __len__(self) -> int:
        return len(self._policies)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(
        self,
        name: str,
        predicate: PolicyPredicate,
        *,
        requires_identity: bool = True,
    ) -> Policy:
        if self._frozen:
            raise AccessPolicyError(f"policy registry is frozen; cannot add {name!r}")
        if name in self._policies:
            raise AccessPolicyError(f"policy {name!r} is already registered")
        policy = Policy(name, predicate, requires_identity)
        self._policies[name] = policy
        return policy

    def policy(
        self,
        name: str | None = None,
        *,
        requires_identity: bool = True,
    ) -> Callable[[PolicyPredicate], PolicyPredicate]:
        """Decorator form of register().

        Usage:
            @registry.policy("items:edit")
            def can_edit(user, item):
                return "editor" in user.roles or item["owner"] == user.id
        """

        def decorator(fn: PolicyPredicate) -> PolicyPredicate:
            self.register(
                name or fn.__name__, fn, requires_identity=requires_identity
            )
            return fn

        return decorator

    def freeze(self) -> None:
        self._frozen = True

    def get(self, name: str) -> Policy:
        try:
            return self._policies[name]
        except KeyError:
            raise AccessPolicyError(f"unknown policy {name!r}") from None


class SessionGate:
    """Tracks the authenticated identity and reacts to credential loss.

    Status moves unknown -> authenticated/anonymous on first resolution,
    authenticated -> anonymous on a credential rejection or logout, and
    anonymous -> authenticated only through a successful login.
    """

    def __init__(
        self,
        transport: Transport,
        store: CacheStore,
        *,
        navigator: Navigator | None = None,
        policies: PolicyRegistry | None = None,
        identity_path: str = "/session",
        login_path: str = "/session/login",
        logout_path: str = "/session/logout",
    ) -> None:
        self._transport = transport
        self._store = store
        self._navigator = navigator if navigator is not None else LoggingNavigator()
        self._policies = policies if policies is not None else PolicyRegistry()
        self._identity_path = identity_path
        self._login_path = login_path
        self._logout_path = logout_path
        self._session = Session()
        self._listeners: list[SessionListener] = []
        self._resolving: asyncio.Task[Session] | None = None

    @property
    def session(self) -> Session:
        return self._session

    @property
    def status(self) -> SessionStatus:
        return self._session.status

    @property
    def identity(self) -> User | None:
        return self._session.identity

    @property
    def epoch(self) -> int:
        return self._session.epoch

    @property
    def policies(self) -> PolicyRegistry:
        return self._policies

    def add_listener(self, listener: SessionListener) -> Callable[[], None]:
        """Call ``listener`` on every session transition."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def ensure_session(self) -> Session:
        """Resolve an unknown session through the identity endpoint.

        Concurrent callers share one identity request. A credential
        rejection here resolves to anonymous without a redirect; other
        failures leave the session unknown and propagate.
        """
        if self._session.status is not SessionStatus.UNKNOWN:
            return self._session
        if self._resolving is None:
            self._resolving = asyncio.ensure_future(self._resolve())
            self._resolving.add_done_callback(self._clear_resolving)
        return await asyncio.shield(self._resolving)

    def _clear_resolving(self, _task: asyncio.Task[Session]) -> None:
        self._resolving = None

    async def _resolve(self) -> Session:
        try:
            payload = await self._transport.send("GET", self._identity_path)
        except Exception as e:
            error = classify_exception(e)
            if not error.is_credential_failure:
                raise error
            payload = None
        if self._session.status is not SessionStatus.UNKNOWN:
            # login or logout won the race
            return self._session
        try:
            user = User.from_payload(payload)
        except ValueError:
            self._set_session(SessionStatus.ANONYMOUS, None)
        else:
            self._set_session(SessionStatus.AUTHENTICATED, user)
        return self._session

    async def login(self, credentials: Any) -> User:
        """Authenticate with the login endpoint.

        A rejected login raises without redirecting: the caller is already
        at the login boundary.
        """
        try:
            payload = await self._transport.send("POST", self._login_path, credentials)
        except Exception as e:
            error = classify_exception(e)
            if error.is_credential_failure and self.status is SessionStatus.UNKNOWN:
                self._set_session(SessionStatus.ANONYMOUS, None)
            raise error
        try:
            user = User.from_payload(payload)
        except ValueError as e:
            raise TransportError(
                ErrorKind.SERVER, f"Login response has no identity: {e}"
            ) from e
        self._set_session(SessionStatus.AUTHENTICATED, user)
        return user

    async def logout(self) -> None:
        """End the session and drop session-scoped cache entries."""
        epoch = self.epoch
        try:
            await self._transport.send("POST", self._logout_path)
        except Exception as e:
            error = classify_exception(e)
            if not error.is_credential_failure:
                raise error
        if self.epoch == epoch:
            self._set_session(SessionStatus.ANONYMOUS, None, epoch=epoch + 1)
            self._store.clear_session_scoped()

    def is_current(self, epoch: int) -> bool:
        """Whether a request stamped with ``epoch`` still has valid credentials."""
        return epoch == self._session.epoch

    def handle_failure(self, error: TransportError, epoch: int) -> bool:
        """Inspect a classified failure; True if it was a credential failure.

        Only the first rejection for a credential context acts: the session
        turns anonymous, session-scoped entries are cleared and the navigator
        is asked to redirect once. Later rejections stamped with the same
        (now old) epoch are absorbed.
        """
        if not error.is_credential_failure:
            return False
        if not self.is_current(epoch):
            logger.debug("Credential rejection from old epoch %d absorbed", epoch)
            return True

        logger.warning("Credentials rejected (%s); session is now anonymous", error)
        self._set_session(SessionStatus.ANONYMOUS, None, epoch=epoch + 1)
        self._store.clear_session_scoped()
        try:
            self._navigator.redirect_to_login()
        except Exception:
            logger.exception("Navigator failed to redirect to login")
        return True

    def check_access(self, policy: str | Policy, context: Any = None) -> bool:
        """Evaluate a policy against the current identity.

        Unknown policy names raise AccessPolicyError; a predicate that fails
        is logged and denies.
        """
        if isinstance(policy, str):
            policy = self._policies.get(policy)
        try:
            return policy.evaluate(self._session.identity, context)
        except Exception:
            logger.exception("Policy %r failed; denying access", policy.name)
            return False

    async def authorize(self, policy: str | Policy, context: Any = None) -> bool:
        """Resolve the session if needed, then check_access()."""
        await self.ensure_session()
        return self.check_access(policy, context)

    def reset(self) -> None:
        """Forget the session (teardown)."""
        if self._resolving is not None:
            self._resolving.cancel()
        self._session = Session()
        self._listeners.clear()

    def _set_session(
        self,
        status: SessionStatus,
        identity: User | None,
        *,
        epoch: int | None = None,
    ) -> None:
        previous = self._session
        self._session = replace(
            previous,
            status=status,
            identity=identity,
            epoch=previous.epoch if epoch is None else epoch,
        )
        logger.info(
            "Session %s -> %s%s",
            previous.status.value,
            status.value,
            f" ({identity.id})" if identity is not None else "",
        )
        for listener in list(self._listeners):
            try:
                listener(self._session)
            except Exception:
                logger.exception("Session listener failed")
