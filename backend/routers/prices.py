"""
backend/routers/prices.py

BTC/USD price lookups through the PriceOracle (CoinGecko, falling back to
Kraken). Both routes return 502 when every source fails.

main.py mounts this router under "/api/prices".
"""

from datetime import date

from fastapi import APIRouter, Depends, Query

from backend.schemas.price import PriceRead
from backend.services.prices import PriceOracle, get_price_oracle

router = APIRouter(tags=["prices"])


@router.get("/current", response_model=PriceRead, summary="Current Bitcoin price in USD")
async def get_current_price(oracle: PriceOracle = Depends(get_price_oracle)):
    return {"price_usd": await oracle.get_current_price()}


@router.get("/historical", response_model=PriceRead, summary="Bitcoin price in USD for one date")
async def get_historical_price(
    day: date = Query(..., alias="date", description="YYYY-MM-DD, not in the future"),
    oracle: PriceOracle = Depends(get_price_oracle),
):
    """Daily price for a past date. A future date is a 400."""
    return {"date": day, "price_usd": await oracle.get_historical_price(day)}
