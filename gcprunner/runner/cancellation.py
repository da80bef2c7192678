from typing import Callable

from gcprunner.core.logger import setup_logger
from gcprunner.runner.controller import LifecycleController
from gcprunner.runner.models import JobHandle

logger = setup_logger(__name__, include_location=True)


class CancellationHandler:
    """
    Kill path for one submitted job.

    Each invocation builds its own controller from controller_factory and
    closes it afterwards, so it never shares clients with the run thread,
    which may already have closed its own. Cancelling is skipped when the job
    is already terminal; every failure is logged, never raised.
    """

    def __init__(self, controller_factory: Callable[[], LifecycleController], handle: JobHandle):
        self.controller_factory = controller_factory
        self.handle = handle

    def __call__(self) -> bool:
        """Returns True when a cancel request was issued."""
        try:
            controller = self.controller_factory()
        except Exception as e:
            logger.warning(f"Unable to kill job {self.handle.name}: {e}")
            return False

        try:
            state = controller.get_state(self.handle)
            if state.is_terminal:
                logger.info(f"Job {self.handle.name} already terminated ({state.value}), nothing to kill")
                return False
            controller.cancel(self.handle)
            logger.info(f"Kill requested for job {self.handle.name} (was {state.value})")
            return True
        except Exception as e:
            logger.warning(f"Failed to kill job {self.handle.name}: {e}")
            return False
        finally:
            controller.close()
