from tinvest_trader.services.market_scanner import MarketScanner

__all__ = ['MarketScanner']
