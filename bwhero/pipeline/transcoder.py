"""
Transcoding Orchestrator — run the codec steps for one image.

    ReadMetadata → ApplyGrayscale? → ApplyArtifactReduction? → ApplySharpen?
                 → ApplyResize? → Encode → Done

Metadata read and encode each run on the bounded worker pool under their
own hard timeout. Every step returns an Outcome; the first failure ends
the run and the caller redirects the client to the original image.

If the encoder rejects the plan's format (no encoder, or the image is too
large for the container) the plan is swapped for the next most compatible
format and encoded once more. A second failure is final.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Optional

from ..config.loader import ProxyConfig
from ..models.image import CompressionContext, ImageMetadata, TranscodeResult
from ..models.outcome import Outcome
from ..models.plan import EncodePlan
from ..observability.metrics import metrics
from ..validation import ProxyError
from . import codec
from .limiter import CancelToken, TranscodeLimiter
from .planner import fallback_plan, plan_encode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Job:
    """Everything known once the header has been read."""

    ctx: CompressionContext
    meta: ImageMetadata
    plan: EncodePlan


class Transcoder:
    """Sequences codec operations for one request at a time (thread-safe)."""

    def __init__(self, config: ProxyConfig, limiter: TranscodeLimiter):
        self.config = config
        self.limiter = limiter

    def transcode(
        self,
        data: bytes,
        ctx: CompressionContext,
        token: Optional[CancelToken] = None,
    ) -> Outcome[TranscodeResult]:
        """
        Transcode `data` for the given context.

        Returns:
            Outcome with a TranscodeResult, or a failure whose kind is one
            of metadata / codec / timeout / cancelled / error.
        """
        token = token or CancelToken()
        started = time.monotonic()

        outcome = (
            self._read_metadata(data, token)
            .then(lambda meta: self._plan(ctx, meta))
            .then(lambda job: self._encode_with_fallback(data, job, token))
        )

        elapsed = time.monotonic() - started
        if outcome.is_ok:
            result = outcome.value
            metrics.timing("transcode_duration_seconds", elapsed, labels={"format": result.format})
            metrics.increment("transcode_total", labels={"format": result.format})
        else:
            metrics.increment("transcode_failed_total", labels={"kind": outcome.error.kind})
            logger.warning(
                f"Transcode failed at {outcome.error.stage or '?'} "
                f"({outcome.error.kind}): {outcome.error.message}"
            )
        return outcome

    # ── Stages ───────────────────────────────────────────────

    def _read_metadata(self, data: bytes, token: CancelToken) -> Outcome[ImageMetadata]:
        try:
            meta = self.limiter.run(
                codec.read_metadata,
                data,
                timeout=self.config.transcode_timeout,
                token=token,
                label="metadata",
            )
        except ProxyError as e:
            return Outcome.from_error(e, stage="metadata")
        except Exception as e:
            logger.error(f"Metadata read crashed: {e}", exc_info=True)
            return Outcome.failed("error", str(e), stage="metadata")
        return Outcome.ok(meta)

    def _plan(self, ctx: CompressionContext, meta: ImageMetadata) -> Outcome[Job]:
        # Frame count can reveal animation the byte scan does not look for (WebP, AVIF)
        if meta.is_animated and not ctx.is_animated:
            ctx = replace(ctx, is_animated=True)
        plan = plan_encode(ctx, meta, self.config)
        logger.debug(
            f"Plan for {meta.width}x{meta.height} ({meta.byte_size:,} bytes, "
            f"{meta.frame_count} frames): {plan.to_dict()}"
        )
        return Outcome.ok(Job(ctx=ctx, meta=meta, plan=plan))

    def _encode_with_fallback(self, data: bytes, job: Job, token: CancelToken) -> Outcome[TranscodeResult]:
        outcome = self._encode(data, job, job.plan, token)
        if outcome.is_ok or outcome.error.kind != "codec":
            return outcome

        fallback = fallback_plan(job.plan)
        if fallback is None:
            return outcome

        logger.warning(
            f"{job.plan.format} rejected ({outcome.error.message}) — "
            f"falling back to {fallback.format}"
        )
        metrics.increment("transcode_fallback_total", labels={"from": job.plan.format, "to": fallback.format})
        return self._encode(data, job, fallback, token)

    def _encode(self, data: bytes, job: Job, plan: EncodePlan, token: CancelToken) -> Outcome[TranscodeResult]:
        try:
            result = self.limiter.run(
                self._process,
                data,
                job,
                plan,
                token,
                timeout=self.config.transcode_timeout,
                token=token,
                label=f"encode {plan.format}",
            )
        except ProxyError as e:
            return Outcome.from_error(e, stage=f"encode {plan.format}")
        except Exception as e:
            # Codec crash: the client is redirected to the original
            logger.error(f"{plan.format} encode crashed: {e}", exc_info=True)
            return Outcome.failed("error", str(e), stage=f"encode {plan.format}")
        return Outcome.ok(result)

    def _process(self, data: bytes, job: Job, plan: EncodePlan, token: CancelToken) -> TranscodeResult:
        """Runs on a worker thread. Checks the token between steps."""
        canvas = codec.open_canvas(data, animated=job.ctx.is_animated, token=token)
        try:
            if plan.grayscale:
                token.check("grayscale")
                canvas.map(codec.to_grayscale, token)

            if plan.artifact_reduction is not None and not canvas.animated:
                token.check("artifact reduction")
                canvas.map(lambda img: codec.reduce_artifacts(img, plan.artifact_reduction), token)

            if plan.sharpen is not None and not canvas.animated:
                token.check("sharpen")
                canvas.map(lambda img: codec.sharpen(img, plan.sharpen), token)

            if plan.resize is not None:
                token.check("resize")
                canvas.map(lambda img: codec.resize(img, plan.resize), token)

            token.check("encode")
            result = codec.encode(canvas, plan, self.config.stream_threshold)
        finally:
            canvas.close()

        if token.cancelled:
            # Finished after the caller gave up; nobody will read this
            result.close()
            token.check("response")
        return result
