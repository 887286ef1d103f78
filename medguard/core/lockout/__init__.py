from medguard.core.lockout.manager import AccessDecision, AttemptState, LockoutConfig, LoginGovernor

__all__ = ["AccessDecision", "AttemptState", "LockoutConfig", "LoginGovernor"]
