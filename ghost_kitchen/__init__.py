"""Ghost kitchen operations: session lifecycle, demand forecasting, staffing and P&L."""

__version__ = "0.1.0"
