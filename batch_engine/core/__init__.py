"""Core execution components: engine, rate limiting, retries, events"""
