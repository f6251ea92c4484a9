"""
Loading the local user's Nostr keys.

The private key is read from an environment variable (``nsec1...`` bech32
or 64-char hex) and never from a configuration file.

Warning:
    Never log, serialize or persist the loaded ``Keys``.

Examples:
    ```python
    os.environ["PRIVATE_KEY"] = "nsec1..."  # pragma: allowlist secret
    keys = load_keys_from_env("PRIVATE_KEY")
    ```
"""

from __future__ import annotations

import os
from typing import Any

from nostr_sdk import Keys, NostrSdkError
from pydantic import BaseModel, Field, model_validator


ENV_PRIVATE_KEY = "PRIVATE_KEY"  # pragma: allowlist secret


def load_keys_from_env(env_var: str) -> Keys:
    """Parse the private key held in *env_var*.

    Raises:
        ValueError: If the variable is unset, empty or not a valid key.
    """
    value = os.getenv(env_var)
    if not value:
        raise ValueError(f"{env_var} environment variable is required (nsec1... or hex)")
    try:
        return Keys.parse(value)
    except NostrSdkError as e:
        raise ValueError(f"{env_var} does not hold a valid private key") from e


class KeysConfig(BaseModel):
    """Key pair of the local user, loaded at validation time.

    ``arbitrary_types_allowed`` is needed because ``nostr_sdk.Keys`` is an
    FFI object, not a Pydantic type.

    Attributes:
        keys_env: Environment variable holding the private key.
        keys: Loaded key pair.
    """

    model_config = {"arbitrary_types_allowed": True}

    keys_env: str = Field(
        default=ENV_PRIVATE_KEY,
        min_length=1,
        description="Environment variable name for the private key",
    )
    keys: Keys = Field(description="Keys loaded from keys_env")

    @model_validator(mode="before")
    @classmethod
    def _load_keys_from_env(cls, data: Any) -> Any:
        if isinstance(data, dict) and "keys" not in data:
            data = {**data, "keys": load_keys_from_env(data.get("keys_env", ENV_PRIVATE_KEY))}
        return data
