"""Shared fixtures: an in-memory nftables double that records every call."""

from typing import Dict, List, Optional, Sequence, Set

import pytest

from nft_blacklist import BlacklistConfig
from nft_client import ControlPlaneClient, NftCommandError


class FakeNftClient(ControlPlaneClient):
    """Keeps table/chain/set state in memory and records calls in order."""

    def __init__(self, table: str = "blacklist", fail_on: Optional[Set[str]] = None):
        self.table = table
        self.fail_on = fail_on or set()
        self.calls: List[tuple] = []
        self.exists = False
        self.chains: Dict[str, Dict] = {}
        self.sets: Dict[str, Dict] = {}

    def _record(self, *call) -> None:
        self.calls.append(call)
        key = ":".join(str(part) for part in call[:2])
        if call[0] in self.fail_on or key in self.fail_on:
            raise NftCommandError(["nft", *map(str, call)], "Error: Could not process rule")

    def _require_table(self, *call) -> None:
        if not self.exists:
            raise NftCommandError(["nft", *map(str, call)], "Error: No such file or directory")

    def calls_named(self, name: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == name]

    def create_table(self) -> None:
        self._record("create_table")
        self.exists = True

    def create_chain(self, name: str, hook: str, priority: int) -> None:
        self._record("create_chain", name, hook, priority)
        self._require_table("create_chain", name)
        self.chains.setdefault(name, {"hook": hook, "priority": priority, "rules": []})

    def create_set(self, name: str, addr_type: str, interval: bool = True) -> None:
        self._record("create_set", name, addr_type, interval)
        self._require_table("create_set", name)
        self.sets.setdefault(name, {"type": addr_type, "interval": interval, "elements": []})

    def list_chain(self, name: str) -> str:
        self._record("list_chain", name)
        self._require_table("list_chain", name)
        chain = self.chains[name]
        lines = [
            f"table inet {self.table} {{",
            f"\tchain {name} {{",
            f"\t\ttype filter hook {chain['hook']} priority {chain['priority']}; policy accept;",
        ]
        lines += [f"\t\t{rule}" for rule in chain["rules"]]
        lines += ["\t}", "}"]
        return "\n".join(lines)

    def add_rule(self, chain: str, expression: str) -> None:
        self._record("add_rule", chain, expression)
        self.chains[chain]["rules"].append(expression)

    def add_elements(self, set_name: str, elements: Sequence[str]) -> None:
        self._record("add_elements", set_name, list(elements))
        self.sets[set_name]["elements"].extend(elements)

    def flush_set(self, set_name: str) -> None:
        self._record("flush_set", set_name)
        self.sets[set_name]["elements"] = []

    def delete_table(self) -> None:
        self._record("delete_table")
        self._require_table("delete_table")
        self.exists = False
        self.chains.clear()
        self.sets.clear()

    def table_exists(self) -> bool:
        self.calls.append(("table_exists",))
        return self.exists


class StubLoader:
    """ListLoader stand-in returning canned per-URL results."""

    def __init__(self, results: Dict[str, object]):
        self.results = results
        self.loaded: List[str] = []

    def load(self, url: str):
        self.loaded.append(url)
        result = self.results[url]
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def config():
    return BlacklistConfig()


@pytest.fixture
def fake_client():
    return FakeNftClient()
