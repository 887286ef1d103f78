from medguard.core.anomaly.detector import AnomalyConfig, AnomalyDetector, TravelAssessment, assess_travel

__all__ = ["AnomalyConfig", "AnomalyDetector", "TravelAssessment", "assess_travel"]
