"""Site-wide RSA key pair for HTTP Signatures.

Loaded from the ``persistent_cache`` table on first use, or generated and
stored there if it doesn't exist yet. Never rotated.
"""
import logging
import threading

from Crypto.PublicKey import RSA

from models import PersistentCache

logger = logging.getLogger(__name__)

CACHE_KEY = 'activitypub_key'
KEY_BITS = 2048

_lock = threading.Lock()
_key = None


def _init():
    """Loads or generates the key. Raises ValueError if the stored key is bad."""
    global _key

    with _lock:
        if _key:
            return _key

        if pem := PersistentCache.load(CACHE_KEY):
            # RSA.import_key raises ValueError on garbage, which is fatal
            _key = RSA.import_key(pem)
            logger.info('Loaded private key')
        else:
            logger.info(f'Generating new {KEY_BITS} bit private key')
            key = RSA.generate(KEY_BITS)
            PersistentCache.store(CACHE_KEY, key.export_key(format='PEM'))
            _key = key

        return _key


def private_pem():
    """Returns the private key as PKCS#1 PEM, str."""
    return _init().export_key(format='PEM').decode()


def public_pem():
    """Returns the public key as SubjectPublicKeyInfo PEM, str."""
    return _init().publickey().export_key(format='PEM').decode()


def reset():
    """Forgets the loaded key so that the next access reloads it."""
    global _key
    with _lock:
        _key = None
