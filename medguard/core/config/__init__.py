from medguard.core.config.loader import load_config
from medguard.core.config.models import LoggingConfig, MedguardConfig, VaultConfig

__all__ = ["LoggingConfig", "MedguardConfig", "VaultConfig", "load_config"]
