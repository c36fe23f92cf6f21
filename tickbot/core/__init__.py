"""
Core session modules for tickbot.

Contains:
- state: explicit SessionState / InstrumentState
- orchestrator: TradingSession, the only component with side effects
"""
