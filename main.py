import sys
from datetime import datetime, timezone
from logging.config import dictConfig

from core.settings import CONFIG_BASE_DIRECTORY_PATH, LOGGING_CONFIG, STAGING_DIR
from exchange.domain import ExtractionStatus, RunContext
from exchange.orchestrator import Orchestrator, OrchestrationConfig
from exchange.source_config import ExtractionSpec, load_extraction_specs_from_directory
from exchange.staging import StagingLayout

dictConfig(LOGGING_CONFIG)

def main() -> int:
    extraction_specs: list[ExtractionSpec] = load_extraction_specs_from_directory(str(CONFIG_BASE_DIRECTORY_PATH))
    orchestrator = Orchestrator(
        specs=extraction_specs,
        staging_layout=StagingLayout(staging_root=STAGING_DIR),
        config=OrchestrationConfig(),
    )

    run_id = datetime.now(timezone.utc).strftime("run_%Y%m%dT%H%M%S")
    outcomes = orchestrator.run(RunContext(run_id=run_id))

    return 1 if any(o.status == ExtractionStatus.FAILED for o in outcomes.values()) else 0

if __name__ == "__main__":
    sys.exit(main())
