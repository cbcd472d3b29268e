"""
backend/schemas/price.py

Responses for the BTC/USD price routes.
"""

import datetime
from pydantic import BaseModel
from typing import Optional


class PriceRead(BaseModel):
    price_usd: float
    date: Optional[datetime.date] = None
