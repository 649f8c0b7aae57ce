from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from invoice_sync.contexts.erp.domain.gateway import ExternalPostingGateway, FiscalizationGateway, StockSource


@dataclass(frozen=True)
class ErpGateways:
    posting: ExternalPostingGateway
    fiscalization: FiscalizationGateway | None
    stock: StockSource


def _read_simulator_seed() -> int:
    try:
        from flask import current_app

        configured = current_app.config.get("ERP_SIMULATOR_SEED")
        if configured is not None:
            return int(configured)
    except RuntimeError:
        pass
    raw = str(os.environ.get("ERP_SIMULATOR_SEED") or "42").strip()
    try:
        return int(raw)
    except ValueError:
        return 42


def _read_mode() -> str:
    try:
        from flask import current_app

        configured = current_app.config.get("ERP_MODE")
        if configured:
            return str(configured).strip().lower()
    except RuntimeError:
        pass
    return str(os.environ.get("ERP_MODE") or "simulator").strip().lower()


@lru_cache(maxsize=4)
def _simulator_gateways(seed: int) -> ErpGateways:
    from invoice_sync.contexts.erp.infrastructure.simulator.deterministic_erp import DeterministicErpSimulator

    simulator = DeterministicErpSimulator(seed=seed)
    return ErpGateways(posting=simulator, fiscalization=simulator, stock=simulator)


def build_erp_gateways() -> ErpGateways:
    mode = _read_mode()
    if mode == "simulator":
        return _simulator_gateways(_read_simulator_seed())
    raise RuntimeError(f"Unsupported ERP_MODE: {mode}")


def reset_gateways_for_tests() -> None:
    _simulator_gateways.cache_clear()
