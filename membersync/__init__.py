"""
membersync: keeps billing subscriptions, member tiers and guild roles in agreement.
"""

__version__ = "1.0.0"
