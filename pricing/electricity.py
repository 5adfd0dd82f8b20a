"""Electricity cost estimates for grid power bought from the neighbour.

Priced at the Swiss average tariff (ElCom, https://www.strompreis.elcom.admin.ch/map).
"""

from dataclasses import asdict, dataclass

PRICE_CHF_PER_KWH = 0.277
PRICE_RAPPEN_PER_KWH = 27.7


@dataclass
class ElectricityCosts:
    neighbor_cost: float        # CHF paid for grid import
    solar_savings: float        # CHF saved by self-consumed solar
    cost_without_solar: float   # CHF if everything came from the grid
    self_consumption: float     # kWh covered by own solar

    def to_dict(self) -> dict:
        return asdict(self)


def calculate_costs(
    consumption_kwh: float,
    grid_import_kwh: float,
    price_chf_per_kwh: float = PRICE_CHF_PER_KWH,
) -> ElectricityCosts:
    """Cost breakdown for any period (day, month, year)."""
    self_consumption = max(0.0, consumption_kwh - grid_import_kwh)
    return ElectricityCosts(
        neighbor_cost=grid_import_kwh * price_chf_per_kwh,
        solar_savings=self_consumption * price_chf_per_kwh,
        cost_without_solar=consumption_kwh * price_chf_per_kwh,
        self_consumption=self_consumption,
    )


def format_chf(amount: float) -> str:
    return f"CHF {amount:,.2f}".replace(",", "'")


def format_rappen(amount: float) -> str:
    return f"{round(amount * 100)} Rp"
