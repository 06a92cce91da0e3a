import hmac
from .errors import ConfigError
from .utils import read_secret


def load_api_key(api_key_file: str) -> str:
    try:
        k = read_secret(api_key_file)
    except OSError as e:
        raise ConfigError(f"api key file unreadable: {api_key_file}") from e
    if len(k) < 16:
        raise ConfigError("matrixci api key too short; use 32+ chars")
    return k


def api_key_ok(got: str, expected: str) -> bool:
    # constant-time compare
    return hmac.compare_digest(got or "", expected or "")
