from wallet_broker.security.replay import ReplayCheck, ReplayLedger, fingerprint

__all__ = ["ReplayCheck", "ReplayLedger", "fingerprint"]
