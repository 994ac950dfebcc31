from tinvest_trader.middleware.rate_limiter import RateLimiter

__all__ = ['RateLimiter']
