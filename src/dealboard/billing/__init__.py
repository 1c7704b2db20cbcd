"""Billing provider integration: plans, checkout, portal and webhooks."""
