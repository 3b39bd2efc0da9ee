"""
Password Hashing Module

Salted scrypt digests. The stored digest embeds its parameters and salt so
verification needs nothing but the digest and the candidate secret.
"""

import hashlib
import hmac
import secrets


class PasswordHasher:
    """Hash and verify password secrets"""

    ALGORITHM = "scrypt"

    def __init__(self, n: int = 16384, r: int = 8, p: int = 1):
        self.n = n
        self.r = r
        self.p = p

    def _generate_salt(self) -> str:
        """Generate random salt for password hashing"""
        return secrets.token_hex(16)

    def _derive(self, password: str, salt: str, n: int, r: int, p: int) -> str:
        return hashlib.scrypt(
            password.encode(),
            salt=salt.encode(),
            n=n, r=r, p=p
        ).hex()

    def hash(self, password: str) -> str:
        """Return ``scrypt$n$r$p$salt$hex`` for the given secret"""
        salt = self._generate_salt()
        derived = self._derive(password, salt, self.n, self.r, self.p)
        return f"{self.ALGORITHM}${self.n}${self.r}${self.p}${salt}${derived}"

    def verify(self, digest: str, password: str) -> bool:
        """Check a candidate secret against a stored digest"""
        try:
            algorithm, n, r, p, salt, expected = digest.split("$")
            n, r, p = int(n), int(r), int(p)
        except (AttributeError, ValueError):
            return False
        if algorithm != self.ALGORITHM:
            return False

        candidate = self._derive(password, salt, n, r, p)
        return hmac.compare_digest(candidate, expected)
