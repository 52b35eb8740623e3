#!/usr/bin/python3
"""
nftables IP Blacklist Synchronizer

This module keeps an nftables-enforced IP blacklist in sync with one or more
remote text feeds. It bootstraps an idempotent inet table (chains, one interval
set per address family, drop rules in both directions) and repopulates the sets
in bounded batches on every run.
"""

import argparse
import enum
import logging
import os
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple
import requests

from nft_client import ControlPlaneClient, NftClient, NftCommandError


@dataclass(frozen=True)
class BlacklistConfig:
    """Immutable run configuration shared by every component."""

    # nftables topology
    table: str = "blacklist"
    input_chain: str = "input"
    output_chain: str = "output"
    set_ipv4: str = "blacklist_v4"
    set_ipv6: str = "blacklist_v6"
    # runs ahead of the standard filter priority (0)
    hook_priority: int = -1

    # Keeps a single "add element" command well under nft's argument limits
    batch_size: int = 1000

    # HTTP
    user_agent: str = "nft-blacklist/1.0"
    proxy: Optional[str] = None
    request_timeout: Optional[float] = 30

    # nft execution
    nft_binary: str = "nft"
    nft_timeout: int = 30
    use_sudo: bool = False
    dry_run: bool = False

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")


class BlacklistError(Exception):
    """Base exception for blacklist synchronization errors."""
    pass


class UnreachableError(BlacklistError):
    """Exception raised when a source list cannot be fetched."""
    pass


class NoSourcesError(BlacklistError):
    """Exception raised when a sync pass is started without any source."""
    pass


class TopologySetupError(BlacklistError):
    """Exception raised when a firewall bootstrap step fails."""

    def __init__(self, step: str, reason: str):
        self.step = step
        self.reason = reason
        super().__init__(f"Topology setup failed at step '{step}': {reason}")


class AddressFamily(enum.Enum):
    IPV4 = "ipv4"
    IPV6 = "ipv6"


_IPV4_SHAPE = re.compile(r'^[0-9]{1,3}(\.[0-9]{1,3}){3}(/[0-9]{1,2})?$')
_IPV6_SHAPE = re.compile(r'^[0-9A-Fa-f:]*:[0-9A-Fa-f:]*(/[0-9]{1,3})?$')


def classify(entry: str) -> Optional[AddressFamily]:
    """
    Route an entry to its address family by shape alone.

    Octet ranges and IPv6 group counts are not checked; nft rejects malformed
    values when they are added.

    Returns:
        AddressFamily.IPV4, AddressFamily.IPV6, or None for an invalid entry
    """
    if not isinstance(entry, str):
        return None
    entry = entry.strip()
    if _IPV4_SHAPE.match(entry):
        return AddressFamily.IPV4
    if _IPV6_SHAPE.match(entry):
        return AddressFamily.IPV6
    return None


class ListFetcher:
    """Downloads remote list sources over HTTP(S)."""

    def __init__(self, config: BlacklistConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.session = session or self._create_session()

    def _create_session(self) -> requests.Session:
        """Create a configured requests session."""
        session = requests.Session()
        session.headers.update({'User-Agent': self.config.user_agent})
        if self.config.proxy:
            session.proxies.update({'http': self.config.proxy, 'https': self.config.proxy})
        return session

    def fetch(self, url: str) -> str:
        """
        Fetch a list source.

        Args:
            url: The URL to fetch

        Returns:
            The response body as text

        Raises:
            UnreachableError: On network error, timeout or non-success status
        """
        try:
            self.logger.info(f"Fetching URL: {url}")
            start_time = time.time()

            response = self.session.get(
                url,
                allow_redirects=True,
                timeout=self.config.request_timeout,
            )
            response.raise_for_status()

            elapsed = time.time() - start_time
            self.logger.info(
                f"Successfully fetched {url}, "
                f"response size: {len(response.text)} bytes, "
                f"elapsed: {elapsed:.2f}s"
            )
            return response.text

        except requests.RequestException as e:
            raise UnreachableError(f"Error fetching {url}: {e}") from e

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "ListFetcher":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


@dataclass
class LoadResult:
    """Entries extracted from one source."""

    ipv4: List[str] = field(default_factory=list)
    ipv6: List[str] = field(default_factory=list)
    invalid: int = 0


class ListLoader:
    """Turns a fetched source into per-family entry lists."""

    _LINE_SPLIT = re.compile(r'[\r\n]+')

    def __init__(self, fetcher: ListFetcher):
        self.fetcher = fetcher
        self.logger = logging.getLogger(__name__)

    def parse(self, data: str, source: str = "<data>") -> LoadResult:
        """
        Classify every entry in raw list text.

        Comment lines (starting with '#') and blank lines are skipped. Entries
        that match neither address family are logged and dropped.
        """
        result = LoadResult()
        for line in self._LINE_SPLIT.split(data):
            line = line.strip()
            if not line or line.startswith('#'):
                continue

            family = classify(line)
            if family is AddressFamily.IPV4:
                result.ipv4.append(line)
            elif family is AddressFamily.IPV6:
                result.ipv6.append(line)
            else:
                result.invalid += 1
                self.logger.warning(f"{source}: invalid entry ignored: {line!r}")
        return result

    def load(self, url: str) -> LoadResult:
        """
        Download and parse one source.

        Raises:
            UnreachableError: If the source could not be fetched
        """
        result = self.parse(self.fetcher.fetch(url), source=url)
        self.logger.info(
            f"{url}: {len(result.ipv4)} IPv4, {len(result.ipv6)} IPv6 valid entries found"
        )
        return result


_FAMILY_SET_TYPE = {AddressFamily.IPV4: "ipv4_addr", AddressFamily.IPV6: "ipv6_addr"}
_FAMILY_MATCH = {AddressFamily.IPV4: "ip", AddressFamily.IPV6: "ip6"}


def set_name_for(config: BlacklistConfig, family: AddressFamily) -> str:
    return config.set_ipv4 if family is AddressFamily.IPV4 else config.set_ipv6


class TopologyManager:
    """Creates the table, chains, sets and drop rules, safe to re-run."""

    def __init__(self, config: BlacklistConfig, client: ControlPlaneClient):
        self.config = config
        self.client = client
        self.logger = logging.getLogger(__name__)

    def _steps(self) -> List[Tuple[str, Callable[[], None]]]:
        cfg = self.config
        return [
            ("table", self.client.create_table),
            ("input-chain", lambda: self.client.create_chain(cfg.input_chain, "input", cfg.hook_priority)),
            ("output-chain", lambda: self.client.create_chain(cfg.output_chain, "output", cfg.hook_priority)),
            ("ipv4-set", lambda: self.client.create_set(cfg.set_ipv4, _FAMILY_SET_TYPE[AddressFamily.IPV4])),
            ("ipv6-set", lambda: self.client.create_set(cfg.set_ipv6, _FAMILY_SET_TYPE[AddressFamily.IPV6])),
            ("input-rules", lambda: self._ensure_drop_rules(cfg.input_chain, "saddr")),
            ("output-rules", lambda: self._ensure_drop_rules(cfg.output_chain, "daddr")),
        ]

    def _ensure_drop_rules(self, chain: str, direction: str) -> None:
        """Append a drop rule per family unless the chain already references its set."""
        definition = self.client.list_chain(chain)
        for family in AddressFamily:
            set_name = set_name_for(self.config, family)
            if re.search(rf'@{re.escape(set_name)}\b', definition):
                self.logger.debug(f"Chain {chain} already references set {set_name}")
                continue
            expression = f"{_FAMILY_MATCH[family]} {direction} @{set_name} drop"
            self.logger.info(f"Adding rule to chain {chain}: {expression}")
            self.client.add_rule(chain, expression)

    def ensure_topology(self) -> None:
        """
        Run every bootstrap step in order.

        Raises:
            TopologySetupError: On the first failing step
        """
        self.logger.info(f"Ensuring nftables topology in table inet {self.config.table}")
        for step, action in self._steps():
            try:
                action()
            except NftCommandError as e:
                error = TopologySetupError(step, e.stderr or str(e))
                self.logger.error(str(error))
                raise error from e
            self.logger.debug(f"Topology step '{step}' ok")

    def teardown(self) -> None:
        """Delete the whole table, taking chains, sets and rules with it."""
        if not self.client.table_exists():
            self.logger.info(f"Table inet {self.config.table} does not exist, nothing to clear")
            return
        self.client.delete_table()
        self.logger.info(f"Deleted table inet {self.config.table}")


@dataclass(frozen=True)
class ApplyFailure:
    """A clear or batch-add failure confined to one address family."""

    family: AddressFamily
    phase: str
    reason: str
    # set for "add" failures, the single entry nft refused
    entry: Optional[str] = None


@dataclass
class FamilyReport:
    family: AddressFamily
    entries: int = 0
    submitted: int = 0
    batches: int = 0
    skipped: bool = False


@dataclass
class SyncReport:
    """Outcome of one sync pass."""

    families: Dict[AddressFamily, FamilyReport] = field(default_factory=dict)
    failures: List[ApplyFailure] = field(default_factory=list)
    failed_sources: List[str] = field(default_factory=list)
    invalid_entries: int = 0

    @property
    def ok(self) -> bool:
        return not self.failures and not self.failed_sources


def chunked(entries: Sequence[str], size: int) -> Iterator[Sequence[str]]:
    """Yield consecutive slices of at most ``size`` entries."""
    for start in range(0, len(entries), size):
        yield entries[start:start + size]


class BlacklistApplier:
    """Main class for synchronizing the blacklist sets from remote sources."""

    def __init__(
        self,
        config: BlacklistConfig,
        client: ControlPlaneClient,
        loader: Optional[ListLoader] = None,
    ):
        """
        Initialize the applier.

        Args:
            config: Run configuration
            client: Control-plane client used for every nft operation
            loader: Source loader (default: one backed by a ListFetcher)
        """
        self.config = config
        self.client = client
        self.loader = loader or ListLoader(ListFetcher(config))
        self.topology = TopologyManager(config, client)
        self.logger = logging.getLogger(__name__)

    def _collect(self, sources: Sequence[str], report: SyncReport) -> Dict[AddressFamily, List[str]]:
        accumulators: Dict[AddressFamily, List[str]] = {family: [] for family in AddressFamily}
        for url in sources:
            try:
                result = self.loader.load(url)
            except UnreachableError as e:
                self.logger.error(f"{e}; skipping source")
                report.failed_sources.append(url)
                continue
            accumulators[AddressFamily.IPV4].extend(result.ipv4)
            accumulators[AddressFamily.IPV6].extend(result.ipv6)
            report.invalid_entries += result.invalid

        for family, entries in accumulators.items():
            unique = list(dict.fromkeys(entries))
            if len(unique) != len(entries):
                self.logger.info(f"Removed {len(entries) - len(unique)} duplicate {family.value} entries")
            accumulators[family] = unique
        return accumulators

    def _submit(self, family: AddressFamily, set_name: str, batch: Sequence[str],
                report: SyncReport) -> int:
        """
        Add one batch, halving it on rejection until the bad entries are isolated.

        Returns:
            Number of entries nft accepted
        """
        try:
            self.client.add_elements(set_name, batch)
            return len(batch)
        except NftCommandError as e:
            reason = e.stderr or str(e)
            if len(batch) == 1:
                self.logger.error(f"nft rejected {family.value} entry {batch[0]!r} for set {set_name}: {reason}")
                report.failures.append(ApplyFailure(family, "add", reason, entry=batch[0]))
                return 0
        self.logger.debug(f"{family.value} batch of {len(batch)} entries rejected, retrying in halves")
        middle = len(batch) // 2
        return (self._submit(family, set_name, batch[:middle], report)
                + self._submit(family, set_name, batch[middle:], report))

    def _populate(self, family: AddressFamily, entries: List[str], report: SyncReport) -> None:
        set_name = set_name_for(self.config, family)
        family_report = report.families[family]

        try:
            self.client.flush_set(set_name)
        except NftCommandError as e:
            self.logger.error(f"Failed to flush {family.value} set {set_name}: {e.stderr or e}")
            report.failures.append(ApplyFailure(family, "flush", e.stderr or str(e)))
            return

        for batch in chunked(entries, self.config.batch_size):
            family_report.batches += 1
            family_report.submitted += self._submit(family, set_name, batch, report)

        self.logger.info(
            f"Applied {family_report.submitted}/{len(entries)} {family.value} entries "
            f"to set {set_name} in {family_report.batches} batches"
        )

    def apply(self, sources: Sequence[str]) -> SyncReport:
        """
        Run one sync pass.

        Families for which no source produced a valid entry are left untouched,
        so a transient outage of every feed keeps the previous blacklist.

        Raises:
            NoSourcesError: If no source was supplied
            TopologySetupError: If the firewall bootstrap failed
        """
        if not sources:
            raise NoSourcesError("No blacklist sources supplied")

        self.logger.info(f"=== Starting blacklist sync from {len(sources)} sources ===")
        self.topology.ensure_topology()

        report = SyncReport()
        accumulators = self._collect(sources, report)
        for family, entries in accumulators.items():
            report.families[family] = FamilyReport(family, entries=len(entries))
            if not entries:
                report.families[family].skipped = True
                self.logger.warning(
                    f"No valid {family.value} entries collected, leaving set "
                    f"{set_name_for(self.config, family)} unchanged"
                )
                continue
            self._populate(family, entries, report)

        self.logger.info("=== Blacklist sync completed ===")
        return report

    def clear_all(self) -> None:
        self.topology.teardown()


def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    """Configure logging with appropriate level and handlers."""
    level = logging.DEBUG if verbose else logging.INFO
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )


def read_sources_file(path: str) -> List[str]:
    """Read source URLs from a file, one per line, ignoring comments."""
    sources = []
    for line in Path(path).read_text().splitlines():
        line = line.strip()
        if line and not line.startswith('#'):
            sources.append(line)
    return sources


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Synchronize an nftables IP blacklist from remote lists',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s apply https://example.org/list.txt     # Sync from one source
  %(prog)s apply --sources-file /etc/nft-blacklist/sources.txt
  %(prog)s apply --dry-run URL                    # Show what would be done
  %(prog)s clear                                  # Remove all blacklist state
        """
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('--dry-run', action='store_true',
                        help='Show what would be done without making changes')
    common.add_argument('--verbose', '-v', action='store_true',
                        help='Enable verbose (debug) logging')
    common.add_argument('--log-file', type=str, help='Also write log output to this file')
    common.add_argument('--sudo', action='store_true', help='Run nft through sudo')
    common.add_argument('--table', type=str, default=BlacklistConfig.table,
                        help='nftables inet table name (default: %(default)s)')

    subparsers = parser.add_subparsers(dest='command', required=True)

    apply_parser = subparsers.add_parser('apply', parents=[common], help='Run one sync pass')
    apply_parser.add_argument('sources', nargs='*', metavar='URL', help='Blacklist source URL')
    apply_parser.add_argument('--sources-file', type=str,
                              help='File with one source URL per line')
    apply_parser.add_argument('--proxy', type=str, default=os.getenv('NFT_BLACKLIST_PROXY'),
                              help='HTTP(S) proxy for all fetches (default: $NFT_BLACKLIST_PROXY)')
    apply_parser.add_argument('--batch-size', type=int, default=BlacklistConfig.batch_size,
                              help='Entries per add-element command (default: %(default)s)')

    subparsers.add_parser('clear', parents=[common], help='Delete the blacklist table')
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose, args.log_file)
    logger = logging.getLogger(__name__)

    try:
        if args.command == 'clear':
            config = BlacklistConfig(table=args.table, use_sudo=args.sudo, dry_run=args.dry_run)
        else:
            config = BlacklistConfig(
                table=args.table,
                use_sudo=args.sudo,
                dry_run=args.dry_run,
                proxy=args.proxy or None,
                batch_size=args.batch_size,
            )
        if config.dry_run:
            logger.info("=== DRY RUN MODE - No changes will be made ===")

        client = NftClient(
            config.table,
            nft_binary=config.nft_binary,
            timeout=config.nft_timeout,
            use_sudo=config.use_sudo,
            dry_run=config.dry_run,
        )

        with ListFetcher(config) as fetcher:
            applier = BlacklistApplier(config, client, loader=ListLoader(fetcher))
            if args.command == 'clear':
                applier.clear_all()
                return 0

            sources = list(args.sources)
            if args.sources_file:
                sources.extend(read_sources_file(args.sources_file))
            report = applier.apply(sources)

        if not report.ok:
            logger.warning(
                f"Sync finished with {len(report.failed_sources)} failed sources "
                f"and {len(report.failures)} apply failures"
            )
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except (BlacklistError, NftCommandError, OSError, ValueError) as e:
        logger.error(f"Fatal error: {e}")
        return 1


if __name__ == "__main__":
    exit(main())
