import logging
import os

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

ADMIN_ADDRESS = os.getenv("STAKING_ADMIN", "0xadmin")
CUSTODY_ADDRESS = os.getenv("STAKING_CUSTODY_ADDRESS", "0xstakingpools")

# Reward scale never drops below 10**12, whatever the token's decimals.
MIN_SCALE_DECIMALS = int(os.getenv("STAKING_MIN_SCALE_DECIMALS", "12"))

LOG_LEVEL = os.getenv("STAKING_LOG_LEVEL", "INFO")


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def parse_api_keys(raw: str) -> dict[str, str]:
    """``"key1:account1,key2:account2"`` -> ``{"key1": "account1", ...}``"""
    keys = {}
    for item in raw.split(","):
        key, sep, account = item.strip().partition(":")
        if sep and key and account:
            keys[key] = account
    return keys


API_KEYS = parse_api_keys(os.getenv("STAKING_API_KEYS", ""))
