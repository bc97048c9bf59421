"""
Venue interface and adapters.
"""

from smartgrid.exchange.gateway import Candle, ExchangeGateway, OrderAck, Ticker

__all__ = ["ExchangeGateway", "OrderAck", "Ticker", "Candle"]
