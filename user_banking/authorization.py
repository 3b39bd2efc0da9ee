"""
Authorization Gate Module

Decides, per call, whether a caller may invoke a method. A method's policy
lists the roles allowed to call it and, optionally, the payload field that
names the owning user; a caller acting on their own resource is allowed
regardless of role, and ROOT satisfies every method. Nothing is cached
between calls: every call verifies its token again.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, TypeVar

from .errors import (
    Canceled, DeadlineExceeded, Internal, PermissionDenied, ServiceError,
    Unauthenticated
)
from .logging_config import get_logger, log_action
from .models import Role
from .tokens import ClaimsCodec, Identity


T = TypeVar("T")

BEARER_PREFIX = "bearer "

# Method names
CREATE_USER = "create_user"
LOGIN = "login"
VALIDATE_TOKEN = "validate_token"
GET_USER = "get_user"
LIST_USERS = "list_users"
UPDATE_USER = "update_user"
DELETE_USER = "delete_user"
LOGOUT = "logout"
CREATE_ACCOUNT = "create_account"
LIST_ACCOUNTS = "list_accounts"
RECONCILE_ACCOUNT = "reconcile_account"
CREATE_TRANSACTION = "create_transaction"
UPDATE_TRANSACTION = "update_transaction"
LIST_TRANSACTIONS = "list_transactions"
DELETE_TRANSACTION = "delete_transaction"


@dataclass(frozen=True)
class MethodPolicy:
    """Roles allowed to call a method plus the payload field naming its owner"""
    roles: FrozenSet[Role] = frozenset()
    owner_field: Optional[str] = None

    @property
    def requires_auth(self) -> bool:
        return bool(self.roles) or self.owner_field is not None


_ADMIN_OR_OWNER = MethodPolicy(roles=frozenset({Role.ADMIN}), owner_field="user_id")

DEFAULT_POLICY: Dict[str, MethodPolicy] = {
    CREATE_USER: MethodPolicy(),
    LOGIN: MethodPolicy(),
    VALIDATE_TOKEN: MethodPolicy(),
    LIST_USERS: MethodPolicy(roles=frozenset({Role.ADMIN})),
    GET_USER: _ADMIN_OR_OWNER,
    UPDATE_USER: _ADMIN_OR_OWNER,
    DELETE_USER: _ADMIN_OR_OWNER,
    LOGOUT: _ADMIN_OR_OWNER,
    CREATE_ACCOUNT: _ADMIN_OR_OWNER,
    LIST_ACCOUNTS: _ADMIN_OR_OWNER,
    RECONCILE_ACCOUNT: _ADMIN_OR_OWNER,
    CREATE_TRANSACTION: _ADMIN_OR_OWNER,
    UPDATE_TRANSACTION: _ADMIN_OR_OWNER,
    LIST_TRANSACTIONS: _ADMIN_OR_OWNER,
    DELETE_TRANSACTION: _ADMIN_OR_OWNER,
}


@dataclass
class CallContext:
    """Ambient per-call data supplied by the transport"""
    token: Optional[str] = None
    deadline: Optional[float] = None  # time.monotonic() timestamp
    cancel_event: Optional[threading.Event] = field(default=None, repr=False)

    @classmethod
    def with_timeout(cls, token: Optional[str], seconds: Optional[float],
                     cancel_event: Optional[threading.Event] = None) -> 'CallContext':
        deadline = time.monotonic() + seconds if seconds is not None else None
        return cls(token=token, deadline=deadline, cancel_event=cancel_event)

    def check(self) -> None:
        """Raise if the call was canceled or ran out of time"""
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise Canceled()
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise DeadlineExceeded()


class AuthorizationGate:
    """Per-call authorization policy plus the boundary around handlers"""

    def __init__(self, codec: ClaimsCodec,
                 policy: Optional[Mapping[str, MethodPolicy]] = None,
                 logger: Optional[logging.Logger] = None):
        self.codec = codec
        self.policy: Dict[str, MethodPolicy] = dict(DEFAULT_POLICY if policy is None else policy)
        self.logger = logger or get_logger("user_banking.authorization")

    def _extract_token(self, token: Optional[str]) -> str:
        if token is None:
            raise Unauthenticated("missing 'authorization' header",
                                  {"authorization": "missing authorization header"})
        token = token.strip()
        if token.lower().startswith(BEARER_PREFIX):
            token = token[len(BEARER_PREFIX):].strip()
        if not token:
            raise Unauthenticated("empty 'authorization' header",
                                  {"authorization": "empty authorization header"})
        return token

    def authorize(self, token: Optional[str], method: str,
                  payload: Optional[Mapping[str, Any]] = None) -> Optional[Identity]:
        """
        Decide whether the bearer of ``token`` may call ``method``.

        Returns the verified identity, or None for public methods.

        Raises:
            Unauthenticated: Missing, empty, invalid or expired token
            PermissionDenied: Verified caller neither owns the target nor
                holds an allowed role
        """
        method_policy = self.policy.get(method)
        if method_policy is None or not method_policy.requires_auth:
            return None

        identity = self.codec.verify(self._extract_token(token))

        if method_policy.owner_field and payload is not None:
            owner = payload.get(method_policy.owner_field)
            if owner is not None and identity.owns(owner):
                return identity

        if identity.role == Role.ROOT or identity.role in method_policy.roles:
            return identity

        log_action(
            self.logger, "warning", f"permission denied for {method}",
            user_id=identity.subject_id, action=method, resource="authorization",
            extra={"role": identity.role.value}
        )
        raise PermissionDenied(
            f"{identity.email} (id={identity.subject_id}) with role "
            f"{identity.role.value} is not permitted to call {method}",
            {"method": method},
        )

    def invoke(self, method: str, payload: Dict[str, Any],
               handler: Callable[[Dict[str, Any]], T],
               context: Optional[CallContext] = None) -> T:
        """
        Run ``handler(payload)`` behind the gate.

        Canceled or expired calls never reach the handler. Service errors
        propagate unchanged; any other fault is logged and surfaced as an
        opaque Internal error.
        """
        context = context or CallContext()
        context.check()
        self.logger.info("unary req", extra={"action": method})

        identity = self.authorize(context.token, method, payload)

        try:
            return handler(payload)
        except ServiceError:
            raise
        except Exception:
            log_action(
                self.logger, "error", f"unexpected fault in {method}",
                user_id=identity.subject_id if identity else None,
                action=method, resource="handler", exc_info=True
            )
            raise Internal() from None
