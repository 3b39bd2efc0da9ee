"""
Service Wiring Module

Builds the storage, token codec, authorization gate and ledger service from
configuration and bootstraps the ROOT user.
"""

from datetime import timedelta
from typing import Optional

from .authorization import AuthorizationGate
from .cache import UserCache
from .config import UserBankingConfig, get_config
from .currency import Currency
from .ledger import LedgerService
from .logging_config import log_action, setup_logging
from .passwords import PasswordHasher
from .storage import StorageInterface, create_storage
from .tokens import ClaimsCodec


class UserBankingSystem:
    """User banking service with all components initialized"""

    def __init__(self, config: Optional[UserBankingConfig] = None,
                 storage: Optional[StorageInterface] = None,
                 hasher: Optional[PasswordHasher] = None):
        self.config = config or get_config()
        self.logger = setup_logging(self.config.log_level, log_format=self.config.log_format)

        # Initialize storage
        self.storage = storage or create_storage(self.config.storage_backend,
                                                 self.config.database_path)

        # Initialize core components
        self.codec = ClaimsCodec(
            secret=self.config.jwt_secret,
            issuer=self.config.jwt_issuer,
            duration=timedelta(minutes=self.config.jwt_duration_minutes),
            algorithm=self.config.jwt_algorithm,
        )
        self.gate = AuthorizationGate(self.codec)

        cache = None
        if self.config.user_cache_enabled:
            cache = UserCache(max_size=self.config.user_cache_max_size,
                              ttl_seconds=self.config.user_cache_ttl_seconds)

        self.ledger = LedgerService(
            self.storage,
            self.codec,
            hasher=hasher or PasswordHasher(),
            currency=Currency[self.config.currency],
            password_min_length=self.config.password_min_length,
            cache=cache,
        )

        self._bootstrap_root()

    def _bootstrap_root(self) -> None:
        """Create the configured ROOT user when credentials are set"""
        if not self.config.root_email or not self.config.root_password:
            return
        user = self.ledger.bootstrap_root(self.config.root_email, self.config.root_password)
        log_action(self.logger, "info", "root user ready", user_id=user.id,
                   action="bootstrap_root", resource="user")

    def close(self) -> None:
        self.storage.close()


# Global system instance, built on first use
_system: Optional[UserBankingSystem] = None


def get_user_banking_system() -> UserBankingSystem:
    global _system
    if _system is None:
        _system = UserBankingSystem()
    return _system
