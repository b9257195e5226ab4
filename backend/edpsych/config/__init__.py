"""Runtime configuration and the shipped tier catalogue (plans.yml)."""
