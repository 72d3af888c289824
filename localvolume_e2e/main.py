import logging
import os
import sys

from .config import HarnessConfig
from .errors import HarnessError
from .kube import KubectlClient
from .orchestrator import LocalVolumeScenario

# Configure logging
logging.basicConfig(
    level=os.environ.get("LV_E2E_LOG_LEVEL", "INFO"),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("localvolume-e2e")


def main():
    """Run the LocalVolume scenario against the current kubeconfig context."""
    config = HarnessConfig.from_env()
    client = KubectlClient(
        kubeconfig=os.environ.get("KUBECONFIG"),
        context=os.environ.get("LV_E2E_KUBE_CONTEXT"),
    )

    logger.info(f"Running LocalVolume scenario in namespace {config.namespace}")
    scenario = LocalVolumeScenario(client, config)
    try:
        completed = scenario.run()
    except HarnessError as e:
        logger.error(f"Scenario failed: {e}")
        return 1

    logger.info(f"Scenario passed: {len(completed)} stages completed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
