"""XenServer image builder: validate, log in, run the step pipeline, produce the artifact."""

from __future__ import annotations

import time
from typing import Any, Callable, List, Mapping, Optional, Sequence

from xenbuilder.artifact import Artifact, produce_artifact
from xenbuilder.config import validate
from xenbuilder.download import DownloadCache, StepDownload
from xenbuilder.exceptions import BuildError, CancellationError, ValidationError
from xenbuilder.instance import (
    StepCreateInstance,
    StepForwardVncPortOverSsh,
    StepShutdownAndExport,
    StepStartVmPaused,
    StepUploadIso,
)
from xenbuilder.models import BuilderConfig
from xenbuilder.pipeline import Runner, RunState, Step
from xenbuilder.session import ControlPlaneSession
from xenbuilder.state import BuildState, CancelToken, StateKey
from xenbuilder.steps import (
    StepBootWait,
    StepConnectSSH,
    StepHTTPServer,
    StepPrepareOutputDir,
    StepProvision,
    StepTypeBootCommand,
    StepWaitForIp,
)
from xenbuilder.ui import BuildUi


def build_steps(config: BuilderConfig) -> List[Step]:
    return [
        StepDownload(
            urls=config.iso_urls,
            checksum=config.iso_checksum,
            checksum_type=config.iso_checksum_type,
            description="ISO",
            result_key=StateKey.ISO_PATH,
        ),
        StepPrepareOutputDir(),
        StepHTTPServer(),
        StepUploadIso(),
        StepCreateInstance(),
        StepStartVmPaused(),
        StepForwardVncPortOverSsh(),
        StepBootWait(),
        StepTypeBootCommand(),
        StepWaitForIp(),
        StepConnectSSH(),
        StepProvision(),
        StepShutdownAndExport(),
    ]


class Builder:
    """One build: ``prepare`` once, ``run`` once, ``cancel`` from anywhere."""

    def __init__(self, session_factory: Callable[[str, str, str], Any] = ControlPlaneSession) -> None:
        self.session_factory = session_factory
        self.config: Optional[BuilderConfig] = None
        self.token = CancelToken()
        self.runner: Optional[Runner] = None
        self.timestamp = int(time.time())

    def prepare(self, *raws: Any, user_variables: Optional[Mapping[str, Any]] = None) -> BuilderConfig:
        """Validate the raw configuration, raising ValidationError with every problem found."""
        variables = {"timestamp": str(self.timestamp), "user": dict(user_variables or {})}
        config, errors = validate(*raws, variables=variables)
        if errors:
            raise ValidationError(errors)
        self.config = config
        return config

    def run(
        self,
        ui: Optional[BuildUi] = None,
        cache: Optional[DownloadCache] = None,
        provisioners: Sequence[Any] = (),
        steps: Optional[Sequence[Step]] = None,
    ) -> Artifact:
        if self.config is None:
            raise BuildError("Builder.prepare() must succeed before run()")
        cfg = self.config
        ui = ui or BuildUi(cfg.build_name)
        if self.token.cancelled:
            raise CancellationError("Build was cancelled")

        session = self.session_factory(cfg.host_ip, cfg.username, cfg.password)
        session.login()
        try:
            ui.say("XAPI client session established")
            session.get_hosts()

            state = BuildState(
                {
                    StateKey.CACHE: cache or DownloadCache(),
                    StateKey.SESSION: session,
                    StateKey.CONFIG: cfg,
                    StateKey.UI: ui,
                    StateKey.PROVISIONERS: list(provisioners),
                }
            )
            self.runner = Runner(steps if steps is not None else build_steps(cfg), token=self.token)
            try:
                outcome = self.runner.run(state)
            finally:
                state.run_cleanups(succeeded=self.runner.state is RunState.COMPLETED)
        finally:
            session.logout()

        if outcome is RunState.CANCELLED:
            raise CancellationError("Build was cancelled")
        if outcome is RunState.FAILED:
            raise state.error
        return produce_artifact(cfg.output_directory)

    def cancel(self) -> None:
        """Request cancellation; blocks until the pipeline unwinds unless called from it."""
        if self.runner is not None:
            self.runner.cancel()
        else:
            self.token.cancel()
