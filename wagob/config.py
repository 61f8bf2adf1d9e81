"""Configuration settings for the wagob indexer."""

from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, Iterable, Iterator, List, Literal, Optional

from pydantic_settings import BaseSettings

from wagob.types import ContractKind, EventKind, JOB_EVENT_KINDS, ESCROW_EVENT_KINDS


class Settings(BaseSettings):
    """Indexer settings loaded from environment (``WAGOB_*``) and ``.env``."""

    # Storage
    db_path: str = "data/wagob.db"
    store_timeout_seconds: float = 5.0

    # Ledger
    network: Literal["testnet", "mainnet"] = "testnet"
    ledger_api_url: str = "https://testnet.toncenter.com/api/v3"
    ledger_api_key: str | None = None
    contract_job_registry: str | None = None
    contract_escrow: str | None = None
    contract_reputation: str | None = None
    contract_version: str = "v1"

    # Polling
    poll_interval_seconds: float = 10.0
    fetch_limit: int = 20
    fetch_timeout_seconds: float = 15.0
    max_retry_cycles: int = 5
    backoff_base_seconds: float = 10.0
    backoff_max_seconds: float = 300.0

    # Notifications
    redelivery_grace_seconds: float = 30.0
    redelivery_batch: int = 100

    # Contract monitoring
    monitor_failure_threshold: int = 3
    monitor_stale_after_seconds: float = 300.0
    monitor_max_error_rate: float = 0.05
    monitor_min_events: int = 10
    monitor_volume_spike: float = 3.0
    monitor_history_days: int = 7

    # Cache TTLs (seconds)
    cache_ttl_job_list: int = 60
    cache_ttl_job: int = 300
    cache_ttl_reputation: int = 600

    # Logging
    log_level: str = "INFO"
    log_dir: str | None = None

    class Config:
        env_prefix = "WAGOB_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env vars not in model


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# === Contract registry ===

# Which contract may emit which events
CONTRACT_EVENT_KINDS: Dict[ContractKind, frozenset] = {
    ContractKind.JOB_REGISTRY: JOB_EVENT_KINDS,
    ContractKind.ESCROW: ESCROW_EVENT_KINDS - {EventKind.DEADLINE_EXPIRED},
    ContractKind.REPUTATION: frozenset({EventKind.RATING_SUBMITTED}),
}


@dataclass(frozen=True)
class ContractInfo:
    address: str
    kind: ContractKind
    version: str = "v1"

    def accepts(self, kind: EventKind) -> bool:
        return kind in CONTRACT_EVENT_KINDS[self.kind]


class ContractRegistry:
    """Monitored contract addresses and what each one is.

    Built once at startup and passed to the scheduler and ledger client.
    """

    def __init__(self, contracts: Iterable[ContractInfo] = ()):
        self._contracts: Dict[str, ContractInfo] = {}
        for info in contracts:
            self.register(info)

    def register(self, info: ContractInfo) -> None:
        if info.address in self._contracts:
            raise ValueError(f"Contract address registered twice: {info.address}")
        self._contracts[info.address] = info

    def get(self, address: str) -> Optional[ContractInfo]:
        return self._contracts.get(address)

    def require(self, address: str) -> ContractInfo:
        info = self._contracts.get(address)
        if info is None:
            raise ValueError(f"Address is not a monitored contract: {address}")
        return info

    @property
    def addresses(self) -> List[str]:
        return list(self._contracts)

    def __contains__(self, address: str) -> bool:
        return address in self._contracts

    def __iter__(self) -> Iterator[ContractInfo]:
        return iter(self._contracts.values())

    def __len__(self) -> int:
        return len(self._contracts)


def build_contract_registry(settings: Settings) -> ContractRegistry:
    """Registry from the ``contract_*`` settings; unset addresses are skipped."""
    registry = ContractRegistry()
    for address, kind in (
        (settings.contract_job_registry, ContractKind.JOB_REGISTRY),
        (settings.contract_escrow, ContractKind.ESCROW),
        (settings.contract_reputation, ContractKind.REPUTATION),
    ):
        if address:
            registry.register(ContractInfo(address, kind, settings.contract_version))
    return registry
