"""EdPsych subscription tiers, feature entitlements and capacity limits."""

__version__ = "0.1.0"
