"""
Settings from the environment (optionally seeded from a `.env` file).

    NEXPATCH_HOME               data dir (default ~/.nexpatch)
    NEXPATCH_PAYLOAD_DIR        loader payload (default <home>/payload)
    NEXPATCH_KEYSTORE           PKCS#12 store (default <home>/keystore.p12)
    NEXPATCH_KEYSTORE_PASSWORD  store password (default 123456)
    NEXPATCH_KEY_ALIAS          key alias (default key0)
    NEXPATCH_KEY_PASSWORD       alias password (default 123456)
    NEXPATCH_TMP_DIR            working dir for temporary archives
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from nexpatch.constants import DEFAULT_KEY_ALIAS, DEFAULT_STORE_PASSWORD


@dataclass(frozen=True)
class Settings:
    home: Path
    payload_dir: Path
    keystore_path: Path
    keystore_password: str = DEFAULT_STORE_PASSWORD
    key_alias: str = DEFAULT_KEY_ALIAS
    key_password: str = DEFAULT_STORE_PASSWORD
    tmp_dir: Optional[Path] = None

    @property
    def uses_default_keystore(self) -> bool:
        return self.keystore_path == self.home / "keystore.p12"


def settings_from_env(env: Mapping[str, str]) -> Settings:
    home = Path(env.get("NEXPATCH_HOME") or Path.home() / ".nexpatch").expanduser()
    tmp = env.get("NEXPATCH_TMP_DIR")
    return Settings(
        home=home,
        payload_dir=Path(env.get("NEXPATCH_PAYLOAD_DIR") or home / "payload").expanduser(),
        keystore_path=Path(env.get("NEXPATCH_KEYSTORE") or home / "keystore.p12").expanduser(),
        keystore_password=env.get("NEXPATCH_KEYSTORE_PASSWORD", DEFAULT_STORE_PASSWORD),
        key_alias=env.get("NEXPATCH_KEY_ALIAS", DEFAULT_KEY_ALIAS),
        key_password=env.get("NEXPATCH_KEY_PASSWORD", DEFAULT_STORE_PASSWORD),
        tmp_dir=Path(tmp).expanduser() if tmp else None,
    )


def load_settings(env_file: Optional[os.PathLike] = None) -> Settings:
    # An existing environment variable always wins over the .env file
    load_dotenv(env_file, override=False)
    return settings_from_env(os.environ)
