"""
nftables control-plane client

Thin command layer over the ``nft`` binary. The blacklist engine only talks to
the ``ControlPlaneClient`` interface, so tests can swap in a recording double.
"""

import logging
import subprocess  # nosec B404 - subprocess usage is intentional and controlled
from abc import ABC, abstractmethod
from typing import List, Sequence


class NftCommandError(Exception):
    """Exception raised when an nft command fails."""

    def __init__(self, command: Sequence[str], stderr: str = ""):
        self.command = list(command)
        self.stderr = (stderr or "").strip()
        super().__init__(f"nft command failed: {' '.join(self.command)}: {self.stderr}")


class ControlPlaneClient(ABC):
    """Operations the blacklist engine needs from the packet filter."""

    @abstractmethod
    def create_table(self) -> None:
        ...

    @abstractmethod
    def create_chain(self, name: str, hook: str, priority: int) -> None:
        ...

    @abstractmethod
    def create_set(self, name: str, addr_type: str, interval: bool = True) -> None:
        ...

    @abstractmethod
    def list_chain(self, name: str) -> str:
        """Return the textual chain definition."""

    @abstractmethod
    def add_rule(self, chain: str, expression: str) -> None:
        ...

    @abstractmethod
    def add_elements(self, set_name: str, elements: Sequence[str]) -> None:
        ...

    @abstractmethod
    def flush_set(self, set_name: str) -> None:
        ...

    @abstractmethod
    def delete_table(self) -> None:
        ...

    @abstractmethod
    def table_exists(self) -> bool:
        ...


class NftClient(ControlPlaneClient):
    """ControlPlaneClient backed by the ``nft`` command line tool."""

    TABLE_FAMILY = "inet"

    def __init__(
        self,
        table: str,
        nft_binary: str = "nft",
        timeout: int = 30,
        use_sudo: bool = False,
        dry_run: bool = False,
    ):
        """
        Initialize the nft client.

        Args:
            table: Name of the inet table all objects live in
            nft_binary: Path or name of the nft executable
            timeout: Seconds before a single nft command is abandoned
            use_sudo: Prefix every command with sudo
            dry_run: Log mutating commands instead of running them
        """
        self.table = table
        self.nft_binary = nft_binary
        self.timeout = timeout
        self.use_sudo = use_sudo
        self.dry_run = dry_run
        self.logger = logging.getLogger(__name__)

    def _command(self, *args: str) -> List[str]:
        prefix = ["sudo"] if self.use_sudo else []
        return prefix + [self.nft_binary, *args]

    def _run(self, *args: str, mutating: bool = True, tolerate_exists: bool = False) -> str:
        """
        Run a single nft command.

        Args:
            args: nft arguments, passed as an argument list (no shell)
            mutating: Whether the command changes ruleset state
            tolerate_exists: Treat "File exists" failures as success

        Returns:
            The command's standard output

        Raises:
            NftCommandError: If nft exits non-zero or times out
        """
        command = self._command(*args)
        if self.dry_run and mutating:
            self.logger.info(f"DRY RUN: Would run: {' '.join(command)}")
            return ""

        self.logger.debug(f"Running: {' '.join(command)}")
        try:
            result = subprocess.run(  # nosec B603 - controlled input, no shell
                command,
                check=True,
                timeout=self.timeout,
                capture_output=True,
                text=True,
            )
        except subprocess.CalledProcessError as e:
            if tolerate_exists and "File exists" in (e.stderr or ""):
                self.logger.debug(f"Object already exists: {' '.join(args)}")
                return ""
            raise NftCommandError(command, e.stderr) from e
        except subprocess.TimeoutExpired as e:
            raise NftCommandError(command, f"timed out after {self.timeout}s") from e
        except OSError as e:
            raise NftCommandError(command, f"failed to execute {self.nft_binary} (errno {e.errno})") from e
        return result.stdout

    def create_table(self) -> None:
        self._run("add", "table", self.TABLE_FAMILY, self.table, tolerate_exists=True)

    def create_chain(self, name: str, hook: str, priority: int) -> None:
        self._run(
            "add", "chain", self.TABLE_FAMILY, self.table, name,
            f"{{ type filter hook {hook} priority {priority}; policy accept; }}",
            tolerate_exists=True,
        )

    def create_set(self, name: str, addr_type: str, interval: bool = True) -> None:
        flags = " flags interval; auto-merge;" if interval else ""
        self._run(
            "add", "set", self.TABLE_FAMILY, self.table, name,
            f"{{ type {addr_type};{flags} }}",
            tolerate_exists=True,
        )

    def list_chain(self, name: str) -> str:
        try:
            return self._run("list", "chain", self.TABLE_FAMILY, self.table, name, mutating=False)
        except NftCommandError:
            # dry runs never created the chain, so there is nothing to read back
            if self.dry_run:
                return ""
            raise

    def add_rule(self, chain: str, expression: str) -> None:
        self._run("add", "rule", self.TABLE_FAMILY, self.table, chain, *expression.split())

    def add_elements(self, set_name: str, elements: Sequence[str]) -> None:
        self._run(
            "add", "element", self.TABLE_FAMILY, self.table, set_name,
            f"{{ {', '.join(elements)} }}",
        )

    def flush_set(self, set_name: str) -> None:
        self._run("flush", "set", self.TABLE_FAMILY, self.table, set_name)

    def delete_table(self) -> None:
        self._run("delete", "table", self.TABLE_FAMILY, self.table)

    def table_exists(self) -> bool:
        """
        Check whether the table is present.

        Raises:
            NftCommandError: If nft fails for any reason other than a missing table
        """
        try:
            self._run("list", "table", self.TABLE_FAMILY, self.table, mutating=False)
        except NftCommandError as e:
            if "No such file or directory" not in e.stderr:
                raise
            self.logger.debug(f"Table {self.table} not listed: {e.stderr}")
            return False
        return True
