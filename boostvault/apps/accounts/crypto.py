from functools import lru_cache

from cryptography.fernet import Fernet
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from xrpl.wallet import Wallet

_key = settings.FERNET_KEY.encode()
fernet = Fernet(_key)


def encrypt_secret(secret: str) -> bytes:
    return fernet.encrypt(secret.encode())


def decrypt_secret(blob: bytes) -> str:
    return fernet.decrypt(bytes(blob)).decode()


def create_custodial_wallet() -> tuple[str, bytes]:
    """
    Creates a new XRPL keypair for a user.
    Purely local; the address is activated by the first payment it receives.
    Returns the classic address and the encrypted seed.
    """
    wallet = Wallet.create()
    return wallet.classic_address, encrypt_secret(wallet.seed)


def wallet_for(account) -> Wallet:
    """Signing wallet for an account's custodial address."""
    return Wallet.from_seed(decrypt_secret(account.secret_encrypted))


@lru_cache(maxsize=1)
def treasury_wallet() -> Wallet:
    if not settings.TREASURY_SEED:
        raise ImproperlyConfigured("TREASURY_SEED is not set.")
    return Wallet.from_seed(settings.TREASURY_SEED)
