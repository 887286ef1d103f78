"""
medguard: credential vault, login governor, anomaly detection and audit trail.
"""
