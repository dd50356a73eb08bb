import hashlib
import hmac
import secrets

ID_BYTES = 9
TOKEN_BYTES = 16


def random_hex(nbytes: int) -> str:
    return secrets.token_hex(nbytes)


def mint_id() -> str:
    # 72 bits; no uniqueness check against the store
    return random_hex(ID_BYTES)


def mint_token() -> str:
    return random_hex(TOKEN_BYTES)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def verify_token(provided: str, stored_hash: str) -> bool:
    if not provided or not stored_hash:
        return False
    return hmac.compare_digest(hash_token(provided), stored_hash)
