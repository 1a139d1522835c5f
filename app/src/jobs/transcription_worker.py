"""
Transcription stage worker.

Claims a job at ``pending_transcription``, runs every answer segment
through the dual-ASR merge engine in question order and stores the
merged transcripts on the job, handing it on to evaluation.
"""

import logging
import time
from typing import Callable, Dict, Optional, Set

from commons import utcnow
from configs.config import get_config
from src.asr.merge import MergeEngine
from src.asr.models import AudioSegment, MergedTranscript
from src.asr.segments import build_segments
from src.asr.whisper_client import WhisperClient
from src.database import catalogue_repository, job_repository
from src.jobs.locking import JobCancelledError, JobLock, LockLostError
from src.jobs.models import Dispatch, JobStage, WorkerKind
from src.jobs.recovery import recover_failed_stage
from src.quota.classifier import QuotaExhaustedError, RateLimitedError
from src.quota.pool import Credential, QuotaPool
from src.storage import segment_store

logger = logging.getLogger(__name__)

cfg = get_config()

MAX_RATE_LIMIT_WAIT_SECONDS = 60


class SegmentTranscriber:
    """
    Transcribes segments with the provider's credentials. A credential on
    which every model still has quota is preferred over one that can only
    serve a single model; a credential is rotated away from once both its
    models are out of quota or it stays throttled.
    """

    def __init__(self, provider: str, pool: Optional[QuotaPool] = None,
                 client_factory: Callable[[str, str], WhisperClient] = WhisperClient,
                 sleep: Callable[[float], None] = time.sleep):
        settings = cfg.ASR_PROVIDERS[provider]
        self.provider = provider
        self.models = [m for m in (settings["model_a"], settings.get("model_b")) if m]
        self.pool = pool or QuotaPool(provider)
        self._client_factory = client_factory
        self._sleep = sleep
        self._credential: Optional[Credential] = None
        self._rotated: Set[str] = set()
        self._clients: Dict[str, WhisperClient] = {}
        self.pool.rewind()

    def _client(self, credential: Credential) -> WhisperClient:
        client = self._clients.get(credential.credential_id)
        if client is None:
            client = self._client_factory(self.provider, credential.secret)
            self._clients[credential.credential_id] = client
        return client

    def _transcriber(self, credential: Credential, model: str):
        client = self._client(credential)

        def transcribe(audio: bytes, filename: str):
            if self.pool.is_exhausted(credential, model):
                raise QuotaExhaustedError(f"{model} exhausted on {credential.credential_id}", model=model)
            try:
                return client.transcribe(model, audio, filename)
            except QuotaExhaustedError:
                self.pool.mark_exhausted(credential.credential_id, model)
                raise

        return transcribe

    def _complete(self, credential: Credential) -> bool:
        return len(self.pool.usable_models(credential, self.models)) == len(self.models)

    def _next_credential(self, complete_only: bool = False) -> Optional[Credential]:
        candidates = [
            c for c in self.pool.eligible(self.models) if c.credential_id not in self._rotated
        ]
        for credential in candidates:
            if self._complete(credential):
                return credential
        if complete_only or not candidates:
            return None
        return candidates[0]

    def _rotate(self, credential: Credential) -> None:
        self._rotated.add(credential.credential_id)
        self._credential = None

    def transcribe(self, segment: AudioSegment, audio: bytes, filename: str) -> MergedTranscript:
        rate_limited_once = False
        previous: Optional[Credential] = None
        while True:
            if self._credential is not None and not self._complete(self._credential):
                self._credential = self._next_credential(complete_only=True) or self._credential
            if self._credential is None:
                self._credential = self._next_credential()
                if self._credential is None:
                    raise QuotaExhaustedError(
                        f"No {self.provider} credential has ASR quota left", model=self.models[0]
                    )
            credential = self._credential
            if credential is not previous:
                rate_limited_once = False
                previous = credential

            engine = MergeEngine(*[self._transcriber(credential, model) for model in self.models])
            try:
                merged = engine.merge(segment, audio, filename)
            except RateLimitedError as exc:
                if not rate_limited_once:
                    rate_limited_once = True
                    wait = min(exc.retry_after or 5, MAX_RATE_LIMIT_WAIT_SECONDS)
                    logger.info("ASR throttled on %s, waiting %ss", credential.credential_id, wait)
                    self._sleep(wait)
                    continue
                logger.info("ASR still throttled on %s, rotating credential", credential.credential_id)
                self._rotate(credential)
                continue
            except QuotaExhaustedError:
                logger.warning("ASR quota exhausted on %s, rotating credential", credential.credential_id)
                self._rotate(credential)
                continue

            # A model ran out of quota mid-segment; redo the segment where both still work.
            if not self._complete(credential) and self._next_credential(complete_only=True):
                logger.info(
                    "Model quota ran out on %s during %s, retrying on another credential",
                    credential.credential_id, segment.segment_key,
                )
                continue
            return merged



def transcribe_segments(job: Dict, lock: JobLock, transcriber: SegmentTranscriber,
                        read_audio: Callable[[str], bytes] = segment_store.read_segment,
                        sleep: Callable[[float], None] = time.sleep) -> Dict:
    """Transcribe every segment of ``job`` in question order."""
    payload = catalogue_repository.get_test_payload(job["test_id"])
    segments = build_segments(job["file_paths"], payload, job.get("durations"))
    merged = []
    for index, segment in enumerate(segments):
        if index:
            sleep(cfg.ASR_INTER_SEGMENT_DELAY_MS / 1000.0)
        lock.checkpoint()
        logger.info(
            "Job %s: transcribing segment %d/%d (%s)",
            job["job_id"], index + 1, len(segments), segment.segment_key,
        )
        audio = read_audio(segment.storage_ref)
        lock.checkpoint()
        result = transcriber.transcribe(segment, audio, segment_store.filename_for(segment.storage_ref))
        merged.append(result.to_document())

    return {
        "provider": transcriber.provider,
        "segments": merged,
        "transcribed_at": utcnow(),
    }


def run_transcription_stage(job_id: str,
                            transcriber_factory: Callable[[str], SegmentTranscriber] = SegmentTranscriber,
                            read_audio: Callable[[str], bytes] = segment_store.read_segment,
                            sleep: Callable[[float], None] = time.sleep) -> Optional[Dispatch]:
    """
    Run the transcription stage for ``job_id``. Returns the next dispatch
    (evaluation, or a retry) or None when there is nothing more to do.
    """
    lock = JobLock(job_id, WorkerKind.TRANSCRIPTION)
    job = lock.claim()
    if job is None:
        return None

    try:
        transcriber = transcriber_factory(job.get("provider") or cfg.DEFAULT_ASR_PROVIDER)
        result = transcribe_segments(job, lock, transcriber, read_audio, sleep)
        lock.checkpoint()
        lock.stop()
        if not job_repository.save_transcription_result(job_id, lock.token, result):
            raise LockLostError(f"Job {job_id} lock lost before saving transcripts")
        return Dispatch(job_id, JobStage.PENDING_EVAL.value)

    except JobCancelledError:
        logger.info("Job %s cancelled during transcription", job_id)
        lock.release()
        return None
    except LockLostError as exc:
        logger.warning("%s; abandoning transcription", exc)
        lock.stop()
        return None
    except Exception as exc:
        logger.error("Job %s transcription failed: %s", job_id, exc, exc_info=True)
        lock.stop()
        return recover_failed_stage(job_id, lock.token, exc)
    finally:
        lock.stop()
