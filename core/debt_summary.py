"""
Debt summary — renders a contact's open contracts as a WhatsApp message.

  💰 Deuda con *BANCO PICHINCHA*:
     ▪️ Producto: Tarjeta de crédito
     ▪️ Valor Total: $1520.40
     ▪️ Valor Liquidación: $980.00

Self-owned portfolios show total and settlement amounts; assigned
portfolios show the balance as of the last cutoff. Contracts without
detail rows are skipped, and a client with nothing to render has no debt.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from database.repository_base import ChatRepository
from models.schemas import DebtContract, DebtDetail

logger = structlog.get_logger()

# Ordered: first fragment found in the upper-cased descriptor wins.
PROVIDER_NAMES: list[tuple[str, str]] = [
    ("BANCO DEL AUSTRO", "BANCO DEL AUSTRO"),
    ("PACIFICO", "BANCO DEL PACÍFICO"),
    ("GUAYAQUIL", "BANCO GUAYAQUIL"),
    ("PICHINCHA", "BANCO PICHINCHA"),
    ("COOP SANTA", "COOP SANTA ROSA"),
    ("EL BOSQUE", "MUEBLES EL BOSQUE"),
    ("JAHER", "JAHER"),
    ("MARCIMEX", "MARCIMEX"),
    ("MASTER MOTO", "MASTER MOTO"),
]

GENERIC_PROVIDER = "EMPRESA"
UNSPECIFIED_PRODUCT = "No especificado"


@dataclass(frozen=True)
class DebtSummary:
    has_debt: bool
    text: str = ""
    providers: tuple[str, ...] = ()


def canonical_provider(description: Optional[str]) -> str:
    upper = (description or "").upper()
    for fragment, name in PROVIDER_NAMES:
        if fragment in upper:
            return name
    return description or GENERIC_PROVIDER


def format_amount(value: Decimal) -> str:
    return f"${Decimal(value).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)}"


def render_contract(contract: DebtContract, details: list[DebtDetail]) -> str:
    if not details:
        return ""
    lines = [f"💰 Deuda con *{canonical_provider(contract.portfolio_description)}*:"]
    for d in details:
        lines.append(f"   ▪️ Producto: {d.product or UNSPECIFIED_PRODUCT}")
        if contract.self_owned:
            lines.append(f"   ▪️ Valor Total: {format_amount(d.total_amount)}")
            lines.append(f"   ▪️ Valor Liquidación: {format_amount(d.settlement_amount)}")
        else:
            lines.append(f"   ▪️ Deuda al corte: {format_amount(d.balance_at_cutoff)}")
    return "\n".join(lines) + "\n\n"


async def build_debt_summary(repo: ChatRepository, national_id: str) -> DebtSummary:
    """Look up open contracts and render one block per contract with details."""
    contracts = await repo.find_debt_contracts_for_client(national_id)
    blocks = []
    providers = []
    for contract in contracts:
        details = await repo.find_debt_detail(contract.id, contract.self_owned)
        block = render_contract(contract, details)
        if block:
            blocks.append(block)
            providers.append(canonical_provider(contract.portfolio_description))

    logger.info("debt_summary_built",
                contracts=len(contracts),
                rendered=len(blocks))
    if not blocks:
        return DebtSummary(has_debt=False)
    return DebtSummary(has_debt=True, text="".join(blocks), providers=tuple(providers))
