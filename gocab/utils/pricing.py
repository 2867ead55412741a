"""
Fare and Carbon Estimation
Fixed-rate estimator; fares are frozen on the ride at request time
"""

from typing import Dict

BASE_FARE = 3.50  # USD
PRICE_PER_MILE = 2.25
PRICE_PER_MINUTE = 0.15
CURRENCY = "USD"

# kg CO2 per mile for an average private car, times the 60% reduction of a shared EV ride
EMISSION_FACTOR_KG_PER_MILE = 0.404 * 0.6
# kg CO2 a mature tree absorbs per year
KG_CO2_PER_TREE = 21.77

COMPARISON_METHOD = "vs private car"
CALCULATION_METHOD = "EPA standard"


def calculate_fare(distance_miles: float, duration_minutes: float = 0) -> Dict[str, float]:
    """
    Calculate a fare breakdown from distance and duration

    Returns:
        Dict with base_fare, distance_fee, time_fee and total, rounded to cents
    """
    distance_fee = round(max(distance_miles, 0) * PRICE_PER_MILE, 2)
    time_fee = round(max(duration_minutes, 0) * PRICE_PER_MINUTE, 2)
    total = round(BASE_FARE + distance_fee + time_fee, 2)

    return {
        "base_fare": BASE_FARE,
        "distance_fee": distance_fee,
        "time_fee": time_fee,
        "total": total,
    }


def calculate_carbon_saved(distance_miles: float) -> float:
    """kg CO2 saved for a trip of the given length"""
    return round(max(distance_miles, 0) * EMISSION_FACTOR_KG_PER_MILE, 2)


def tree_equivalent(carbon_saved_kg: float) -> float:
    """Number of tree-years needed to absorb the same amount of CO2"""
    return round(max(carbon_saved_kg, 0) / KG_CO2_PER_TREE, 2)
