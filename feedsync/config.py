"""YAML configuration loader for feedsync.

Loads the seed config files from the config/ directory:
  accounts.yaml, matching.yaml
"""

from dataclasses import dataclass
from pathlib import Path

import yaml

from feedsync.database.dedup import LegacyMode


@dataclass(frozen=True)
class AccountMapping:
    """Pairs one feed account with one ledger account."""
    source_account_id: str
    ledger_account_id: str
    name: str = ""


class Config:
    """Loads and provides access to all YAML configuration files."""

    def __init__(self, config_dir: Path | str = "config"):
        self.config_dir = Path(config_dir)
        if not self.config_dir.is_dir():
            raise FileNotFoundError(f"Config directory not found: {self.config_dir}")

        self._accounts: list[dict] | None = None
        self._matching: dict | None = None

    def _load(self, filename: str) -> dict | list:
        path = self.config_dir / filename
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            raise ValueError(f"Empty config file: {path}")
        return data

    @property
    def accounts(self) -> list[dict]:
        if self._accounts is None:
            data = self._load("accounts.yaml")
            if isinstance(data, dict):
                if "accounts" not in data:
                    raise ValueError("accounts.yaml must define an 'accounts' list")
                data = data["accounts"]
            if not isinstance(data, list) or not all(isinstance(a, dict) for a in data):
                raise ValueError("accounts.yaml 'accounts' must be a list of mappings")
            self._accounts = data
        return self._accounts

    @property
    def matching(self) -> dict:
        """matching.yaml is optional; defaults apply when it is absent."""
        if self._matching is None:
            if (self.config_dir / "matching.yaml").exists():
                data = self._load("matching.yaml")
                if not isinstance(data, dict):
                    raise ValueError("matching.yaml must be a mapping")
                self._matching = data
            else:
                self._matching = {}
        return self._matching

    @property
    def account_mappings(self) -> list[AccountMapping]:
        """Feed account → ledger account pairs from accounts.yaml.

        Raises:
            ValueError: an entry lacks either id, or a feed account is
                mapped more than once.
        """
        mappings: list[AccountMapping] = []
        seen: set[str] = set()
        for acct in self.accounts:
            source_id = str(acct.get("source_account_id", "") or "").strip()
            ledger_id = str(acct.get("ledger_account_id", "") or "").strip()
            if not source_id or not ledger_id:
                raise ValueError(
                    f"Account entry needs source_account_id and ledger_account_id: {acct}"
                )
            if source_id in seen:
                raise ValueError(f"Feed account mapped more than once: {source_id}")
            seen.add(source_id)
            mappings.append(
                AccountMapping(source_id, ledger_id, acct.get("name", "") or "")
            )
        return mappings

    @property
    def legacy_mode(self) -> LegacyMode:
        """Legacy date+amount fallback tier. Default: off."""
        # YAML reads a bare `off` as False
        raw = self.matching.get("legacy_fallback", "off")
        if raw is False or raw is None:
            raw = "off"
        try:
            return LegacyMode(str(raw).strip().lower())
        except ValueError as e:
            raise ValueError(f"Unknown legacy_fallback mode: {raw!r}") from e
