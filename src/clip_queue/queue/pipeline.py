"""Staged clip pipeline with per-stage diagnostics.

A pipeline is any callable taking the claimed JobRecord and returning an
ArtifactReference. StagedPipeline is the stock implementation: an ordered
list of named stages over a shared context, where

- a failing non-critical stage is recorded and the job continues with
  degraded input (e.g. the original quote instead of looked-up text)
- a failing critical stage aborts the attempt with StageError

The domain work itself (text lookup, subtitles, rendering and upload) is
injected; nothing here talks to a renderer directly.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .backends import ResultPublisher
from .errors import ArtifactVerificationError, PermanentJobError, StageError
from .models import ArtifactReference, ClipPayload, JobRecord, RenderRequest, Subtitle
from .publisher import publish_safely

logger = logging.getLogger(__name__)

# Window used when a clip carries no usable time range
DEFAULT_CLIP_WINDOW_S = 30.0

TextLookup = Callable[[str, float, float], Optional[str]]
SubtitleGenerator = Callable[[ClipPayload, float, float], Optional[List[Subtitle]]]
ClipRenderer = Callable[[RenderRequest], ArtifactReference]
Pipeline = Callable[[JobRecord], ArtifactReference]


@dataclass
class StageContext:
    """Mutable state shared by the stages of one attempt."""

    job: JobRecord
    text: str = ""
    time_start: Optional[float] = None
    time_end: Optional[float] = None
    subtitles: Optional[List[Subtitle]] = None
    artifact: Optional[ArtifactReference] = None
    current_stage: str = "initialization"
    completed_stages: List[str] = field(default_factory=list)
    stage_errors: Dict[str, str] = field(default_factory=dict)

    @property
    def log_prefix(self) -> str:
        return f"[CLIP-PROCESSING][{self.job.lookup_hash}]"


@dataclass
class Stage:
    """One named pipeline step."""

    name: str
    run: Callable[[StageContext], None]
    critical: bool = False


def verify_artifact(artifact: object) -> ArtifactReference:
    """Completion criteria: a non-empty artifact reference.

    Raises:
        ArtifactVerificationError: If nothing usable was produced
    """
    if not isinstance(artifact, ArtifactReference):
        raise ArtifactVerificationError(
            f"Pipeline returned {type(artifact).__name__}, expected ArtifactReference"
        )
    if not artifact.uri or not artifact.uri.strip():
        raise ArtifactVerificationError("Artifact upload failed - no file ID returned")
    return artifact


class StagedPipeline:
    """Run stages in order, recording each stage's failure independently."""

    def __init__(self, stages: List[Stage], publisher: Optional[ResultPublisher] = None):
        if not stages:
            raise ValueError("A pipeline needs at least one stage")
        self.stages = stages
        self.publisher = publisher

    @property
    def stage_names(self) -> List[str]:
        return [stage.name for stage in self.stages]

    def __call__(self, job: JobRecord) -> ArtifactReference:
        ctx = self.run_stages(StageContext(job=job, text=job.payload.clip.quote))
        artifact = verify_artifact(ctx.artifact)
        return artifact.model_copy(
            update={
                "metadata": {
                    **artifact.metadata,
                    "completed_stages": list(ctx.completed_stages),
                    "stage_errors": dict(ctx.stage_errors),
                }
            }
        )

    def run_stages(self, ctx: StageContext) -> StageContext:
        """Execute every stage against ctx.

        Raises:
            StageError: When a critical stage fails
        """
        lookup_hash = ctx.job.lookup_hash
        logger.info("%s Starting processing (attempt %d)", ctx.log_prefix, ctx.job.attempts)

        for stage in self.stages:
            ctx.current_stage = stage.name
            try:
                stage.run(ctx)
            except Exception as e:
                ctx.stage_errors[stage.name] = str(e)

                if stage.critical:
                    logger.error("%s [%s] CRITICAL FAILURE: %s", ctx.log_prefix, stage.name, e)
                    publish_safely(
                        self.publisher,
                        lookup_hash,
                        "failed",
                        {"failedStage": stage.name, "lastError": str(e)},
                    )
                    raise StageError(stage.name, e) from e

                logger.warning("%s [%s] FAILED, continuing: %s", ctx.log_prefix, stage.name, e)
                publish_safely(
                    self.publisher, lookup_hash, "processing", {"stageErrors": {stage.name: str(e)}}
                )
            else:
                ctx.completed_stages.append(stage.name)

        return ctx


def build_clip_pipeline(
    renderer: ClipRenderer,
    text_lookup: Optional[TextLookup] = None,
    subtitle_generator: Optional[SubtitleGenerator] = None,
    publisher: Optional[ResultPublisher] = None,
) -> StagedPipeline:
    """Assemble the stock clip pipeline.

    Stages:
        1. parameter-extraction (critical): time range + episode identity
        2. text-fetching: replace the quote with looked-up transcript text
        3. subtitle-generation: precomputed subtitles win, else generator
        4. video-processing (critical): render and upload via renderer
        5. verification (critical): artifact reference must be non-empty

    Args:
        renderer: External render/upload step
        text_lookup: Optional (guid, start, end) -> text
        subtitle_generator: Optional (payload, start, end) -> subtitles
        publisher: Optional work-product side channel
    """

    def extract_parameters(ctx: StageContext) -> None:
        payload = ctx.job.payload
        if payload.timestamps:
            start, end = payload.timestamps
        else:
            start = payload.clip.time_context.start_time
            end = payload.clip.time_context.end_time

        if start is None or end is None:
            logger.warning(
                "%s Missing or incomplete time parameters (start=%s, end=%s); "
                "defaulting to 0-%ds window",
                ctx.log_prefix,
                start,
                end,
                DEFAULT_CLIP_WINDOW_S,
            )
            start, end = 0.0, DEFAULT_CLIP_WINDOW_S

        if end <= start:
            raise PermanentJobError(f"Invalid time range {start}-{end}")
        if not payload.clip.guid:
            raise PermanentJobError("Missing podcast GUID in clip data")

        ctx.time_start, ctx.time_end = float(start), float(end)
        logger.info(
            "%s Extracted params - GUID: %s, Time: %s-%s",
            ctx.log_prefix,
            payload.clip.guid,
            ctx.time_start,
            ctx.time_end,
        )

    def fetch_text(ctx: StageContext) -> None:
        if text_lookup is None:
            return
        text = text_lookup(ctx.job.payload.clip.guid, ctx.time_start, ctx.time_end)
        if text:
            ctx.text = text
            publish_safely(
                publisher,
                ctx.job.lookup_hash,
                "processing",
                {"clipText": text, "textSource": "lookup"},
            )
        else:
            logger.warning("%s No accurate text found, using original quote", ctx.log_prefix)

    def generate_subtitles(ctx: StageContext) -> None:
        payload = ctx.job.payload
        if payload.subtitles:
            ctx.subtitles = payload.subtitles
            return
        if subtitle_generator is None:
            return

        ctx.subtitles = None
        subtitles = subtitle_generator(payload, ctx.time_start, ctx.time_end)
        ctx.subtitles = subtitles or None
        publish_safely(
            publisher,
            ctx.job.lookup_hash,
            "processing",
            {"hasSubtitles": bool(subtitles), "subtitleCount": len(subtitles or [])},
        )

    def render(ctx: StageContext) -> None:
        request = RenderRequest(
            lookup_hash=ctx.job.lookup_hash,
            clip=ctx.job.payload.clip,
            start=ctx.time_start,
            end=ctx.time_end,
            text=ctx.text,
            subtitles=ctx.subtitles,
        )
        ctx.artifact = renderer(request)

    def verify(ctx: StageContext) -> None:
        ctx.artifact = verify_artifact(ctx.artifact)

    return StagedPipeline(
        [
            Stage("parameter-extraction", extract_parameters, critical=True),
            Stage("text-fetching", fetch_text),
            Stage("subtitle-generation", generate_subtitles),
            Stage("video-processing", render, critical=True),
            Stage("verification", verify, critical=True),
        ],
        publisher=publisher,
    )
