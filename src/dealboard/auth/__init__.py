"""Session bootstrap, entitlement resolution and route gating."""
