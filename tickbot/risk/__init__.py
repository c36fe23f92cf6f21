"""
Staking and risk guards.

Contains:
- stake_policy: martingale / grid stake transitions
- gatekeeper: independent guards returning RiskLimitExceeded
"""
