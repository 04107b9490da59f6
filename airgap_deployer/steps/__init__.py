from .step_10_verify_bundle import VerifyBundleStep
from .step_20_install_service import InstallServiceStep
from .step_30_load_models import LoadModelsStep
from .step_40_harden_node import HardenNodeStep

__all__ = [
    "VerifyBundleStep",
    "InstallServiceStep",
    "LoadModelsStep",
    "HardenNodeStep",
]
