from __future__ import annotations

import logging
from typing import Any, Dict

from ..errors import MissingComponent
from ..lib.bundle import verify_bundle
from ..lib.net import check_airgap
from ..pipeline import DeployCtx, DeployPhase
from ..state_store import record_decision

logger = logging.getLogger(__name__)


class VerifyBundleStep:
    step_id = "10_verify_bundle"
    phase = DeployPhase.VERIFYING

    def run(self, ctx: DeployCtx, state: Dict[str, Any]) -> Dict[str, Any]:
        if ctx.bundle_dir is None:
            raise MissingComponent("bundle", "no bundle directory given")

        bundle = verify_bundle(ctx.bundle_dir, ctx.cfg)
        meta = bundle.metadata

        state["bundle"] = {
            "root": str(bundle.root),
            "binary": str(bundle.binary),
            "models_dir": str(bundle.models_dir),
            "metadata": meta.raw if meta else None,
        }

        air_gapped = check_airgap(ctx.host, probe_host=ctx.cfg.airgap_probe_host)
        record_decision(state, self.step_id, "air_gapped", air_gapped)
        return state
