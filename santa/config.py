"""
Service Configuration

Values come from the environment; main.py loads config.env into it first
with python-dotenv. Attribute access is case-insensitive: config.app_url and
config.APP_URL are the same value.
"""

import os
from typing import Mapping, Optional


class Config:
    """Load config with validation and defaults"""
    _required = {
        "APP_URL": (str, None),
    }
    _optional = {
        "HOST": (str, "0.0.0.0"),
        "PORT": (int, 5001),
        "LOG_LEVEL": (str, "INFO"),
        "LOG_FILE": (str, "santa.log"),
        "STATE_FILE": (str, "data/secret_santa_state.json"),
        "EMAIL_FROM": (str, ""),
        "SENDGRID_API_KEY": (str, ""),
        "SMTP_HOST": (str, ""),
        "SMTP_PORT": (int, 587),
        "SMTP_USER": (str, ""),
        "SMTP_PASSWORD": (str, ""),
        "DELIVERY_TIMEOUT": (int, 15),
        "NOTIFY_MAX_ATTEMPTS": (int, 3),
        "NOTIFY_BASE_DELAY": (int, 60),
        "WISHLIST_NOTIFY_DELAY": (int, 0),
        "SWEEP_INTERVAL": (int, 60),
        "BACKUP_INTERVAL": (int, 3600),
        "RATE_LIMIT_REQUESTS": (int, 30),
        "RATE_LIMIT_WINDOW": (int, 60),
        "MAX_PARTICIPANTS": (int, 200),
        "DEBUG_MODE": (bool, False),
    }

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self.environ = os.environ if environ is None else environ
        self.data = {}
        self._load()

    def _load(self):
        missing = []
        for key, (cast_type, _) in self._required.items():
            val = self.environ.get(key)
            if not val or not val.strip():
                missing.append(key)
                continue
            self.data[key] = self._cast(key, cast_type, val.strip())

        if missing:
            raise RuntimeError(f"Missing config: {missing}")

        for key, (cast_type, default) in self._optional.items():
            val = self.environ.get(key)
            if val is None or (cast_type is not str and not val.strip()):
                self.data[key] = default
                continue
            self.data[key] = self._cast(key, cast_type, val.strip())
            if cast_type == int:
                self._validate_int_config(key, self.data[key])

    @staticmethod
    def _cast(key: str, cast_type, val: str):
        if cast_type == bool:
            return val.lower() in ("1", "true", "yes", "on")
        if cast_type == int:
            try:
                return int(val)
            except ValueError:
                raise RuntimeError(f"Config {key} must be an integer (got {val!r})")
        return val

    def _validate_int_config(self, key: str, value: int):
        """Reject values outside the range the service can work with"""
        validators = {
            "PORT": (1, 65535),
            "SMTP_PORT": (1, 65535),
            "DELIVERY_TIMEOUT": (1, 120),
            "NOTIFY_MAX_ATTEMPTS": (1, 20),
            "NOTIFY_BASE_DELAY": (0, 86400),
            "WISHLIST_NOTIFY_DELAY": (0, 86400),
            "SWEEP_INTERVAL": (1, 3600),
            "BACKUP_INTERVAL": (60, 86400),
            "RATE_LIMIT_REQUESTS": (1, 10000),
            "RATE_LIMIT_WINDOW": (1, 3600),
            "MAX_PARTICIPANTS": (2, 10000),
        }

        if key in validators:
            min_val, max_val = validators[key]
            if not (min_val <= value <= max_val):
                raise RuntimeError(f"Config {key}={value} is outside the allowed range ({min_val}-{max_val})")

    def __getattr__(self, name: str):
        key = name.upper()
        data = self.__dict__.get("data", {})
        if key in data:
            return data[key]
        raise AttributeError(f"Config missing: {key}")
