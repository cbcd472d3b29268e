# backend/models/__init__.py

"""
This __init__.py file ensures that models and database components are available
for import throughout the backend application. Importing the package registers
every table with Base.metadata.
"""

from backend.database import Base

from .portfolio import Portfolio
from .transaction import Transaction
from .invoice import Invoice
