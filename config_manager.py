import os

__all__ = ["validate_configs", "resolve_path"]


def resolve_path(path: str) -> str:
    """Resolve a config path relative to this directory unless it is absolute."""
    if os.path.isabs(path):
        return path
    return os.path.join(os.path.dirname(os.path.abspath(__file__)), path)


def validate_configs() -> None:
    """Validate configuration settings."""
    try:
        import configs
    except ImportError as e:
        raise ImportError("configs.py could not be imported. Contact the developer.") from e

    if not isinstance(configs.RELAY_URL, str) or not configs.RELAY_URL.startswith(("http://", "https://")):
        raise ValueError("RELAY_URL must be an http:// or https:// URL")

    if not isinstance(configs.HTTP_TIMEOUT, (int, float)) or configs.HTTP_TIMEOUT <= 0:
        raise ValueError("HTTP_TIMEOUT must be a positive number")

    if not isinstance(configs.PEER_KEY_TIMEOUT, (int, float)) or configs.PEER_KEY_TIMEOUT <= 0:
        raise ValueError("PEER_KEY_TIMEOUT must be a positive number")

    if not isinstance(configs.RECONNECT_BACKOFF, (int, float)) or configs.RECONNECT_BACKOFF < 0:
        raise ValueError("RECONNECT_BACKOFF must be zero or a positive number")

    if not isinstance(configs.DEFAULT_MAX_FILE_SIZE, int) or configs.DEFAULT_MAX_FILE_SIZE <= 0:
        raise ValueError("DEFAULT_MAX_FILE_SIZE must be a positive number")

    if configs.SESSION_KEY_SIZE != 32:
        raise ValueError("SESSION_KEY_SIZE must be 32, AES-256 is the only supported cipher")

    if configs.NONCE_SIZE != 12 or configs.TAG_SIZE != 16:
        raise ValueError("NONCE_SIZE and TAG_SIZE are fixed protocol constants (12 and 16)")

    if not os.path.isfile(resolve_path(configs.PGP_WORDLIST_FILE)):
        raise FileNotFoundError(f"PGP wordlist file not found: {configs.PGP_WORDLIST_FILE}")

    if not isinstance(configs.PHRASE_WORDLIST_FILE, str) or not configs.PHRASE_WORDLIST_FILE:
        raise ValueError("PHRASE_WORDLIST_FILE must be a file name")


validate_configs()
