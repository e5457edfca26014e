from __future__ import annotations

import enum
import json
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from loguru import logger

from .client import (
    FatalModelError,
    ModelConfig,
    ModelTransportError,
    QuotaExceededError,
    TranslationClient,
    build_backend,
)
from .codec import SubtitleEntry, SubtitleParseError, load_subtitles, save_subtitles
from .config import Settings, TranslationJob
from .failover import ApiKeyFailover, CredentialPair
from .interrupts import CancelledByUser, CancelToken, ignore_signals_during_shutdown, sleep_with_cancel
from .models import ConfigError, ModelManager
from .progress import ProgressState, ProgressStore, resolve_start_line
from .prompts import build_instruction, build_request
from .reporter import LoggerReporter, ProgressReporter, ThoughtsLog, TranscriptReporter, make_event
from .validator import validate

# Rough size of a token for the pre-flight size check.
CHARS_PER_TOKEN = 4
TOKEN_LIMIT_RATIO = 0.8
BATCH_SHRINK_RATIO = 0.75


@dataclass
class Batch:
    start_line: int
    entries: list[dict[str, str]]

    @property
    def next_line(self) -> int:
        return self.start_line + len(self.entries)


class ContextWindow:
    """Last few (request, response) exchanges, replayed in front of every new request."""

    def __init__(self, max_pairs: int = 3):
        self.max_pairs = max(0, int(max_pairs))
        self._pairs: list[tuple[str, str]] = []

    def append(self, sent_json: str, received_json: str) -> None:
        self._pairs.append((sent_json, received_json))
        if len(self._pairs) > self.max_pairs:
            del self._pairs[: len(self._pairs) - self.max_pairs]

    def messages(self) -> list[dict[str, str]]:
        out: list[dict[str, str]] = []
        for sent, received in self._pairs:
            out.append({"role": "user", "content": sent})
            out.append({"role": "model", "content": received})
        return out

    def __len__(self) -> int:
        return len(self._pairs)


class BatchFailure(enum.Enum):
    VALIDATION = "validation"
    TRANSPORT = "transport"
    QUOTA = "quota"
    RESIZED = "resized"


@dataclass
class TranslationSession:
    target_language: str
    model_name: str
    streaming: bool
    thinking: bool
    batch_size: int
    batch_number: int = 0
    translations: dict[str, str] = field(default_factory=dict)
    cursor: int = 1


def retry_delay(attempt: int) -> float:
    return float(min(2 ** attempt, 20))


class SubtitleTranslator:
    """Translate a subtitle list batch by batch, committing each batch whole."""

    def __init__(
        self,
        settings: Settings,
        job: TranslationJob,
        *,
        client: TranslationClient | None = None,
        reporter: ProgressReporter | None = None,
        cancel_token: CancelToken | None = None,
        progress_store: ProgressStore | None = None,
        sleep: Callable[[float], None] | None = None,
    ):
        self.settings = settings
        self.job = job
        self.cancel_token = cancel_token or CancelToken()
        self._sleep = sleep or (lambda s: sleep_with_cancel(self.cancel_token, s))
        self.client = client or TranslationClient(build_backend(settings), cancel_token=self.cancel_token)
        self.model_manager = ModelManager(settings)
        self.progress_store = progress_store or ProgressStore(job.input_file)

        base_reporter = reporter or LoggerReporter()
        self.transcript: TranscriptReporter | None = None
        if settings.progress_log:
            self.transcript = TranscriptReporter(base_reporter)
            self.reporter: ProgressReporter = self.transcript
        else:
            self.reporter = base_reporter
        self.thoughts_log = ThoughtsLog(job.work_dir / "thoughts.log") if settings.thoughts_log else None

        primary, secondary = settings.api_keys()
        self.failover = ApiKeyFailover(
            CredentialPair(primary=primary or "", secondary=secondary),
            cooldown_s=settings.quota_cooldown_s,
            cancel_token=self.cancel_token,
            sleep=self._sleep,
        )
        self.context = ContextWindow(settings.context_pairs)
        self.session = TranslationSession(
            target_language=job.target_language,
            model_name=settings.model_name,
            streaming=settings.streaming,
            thinking=settings.thinking,
            batch_size=settings.batch_size,
        )
        self.model_config = self._build_model_config()
        self._token_limit: Optional[int] = None
        self._token_limit_checked = False
        self._last_failure: BatchFailure | None = None
        self._flush_lock = threading.Lock()
        self._total = 0

    # ------------------------------------------------------------------ #
    # Setup
    # ------------------------------------------------------------------ #

    def _build_model_config(self) -> ModelConfig:
        caps = self.model_manager.capabilities()
        s = self.settings
        budget = s.thinking_budget if s.thinking else 0
        return ModelConfig(
            model_name=s.model_name,
            system_instruction=build_instruction(
                self.job.target_language,
                self.job.description,
                thinking=s.thinking,
                thinking_compatible=caps.thinking,
            ),
            temperature=s.temperature,
            top_p=s.top_p,
            top_k=s.top_k,
            thinking_budget=budget,
            include_thoughts=s.thinking and caps.thinking,
            thinking_compatible=caps.thinking,
            thinking_budget_compatible=caps.thinking_budget,
            timeout_s=s.request_timeout_s,
        )

    def translate(self, confirm_resume: Callable[[ProgressState], bool] | None = None) -> bool:
        """Check configuration, load the input file, pick the start line and run.

        `confirm_resume` is asked whether a saved progress record should be used;
        without it a matching record is resumed automatically.
        """
        try:
            self.model_manager.ensure_ready(self.job)
            subtitles = load_subtitles(self.job.input_file)
        except (ConfigError, SubtitleParseError) as exc:
            self.reporter.on_error(str(exc))
            return False

        start, saved = resolve_start_line(self.progress_store, self.job.start_line)
        if saved is not None and saved.line > 1 and (confirm_resume is None or confirm_resume(saved)):
            start = saved.line
            logger.info(f"从第 {saved.line} 行继续翻译")
        self.job.start_line = start
        return self.run(subtitles)

    # ------------------------------------------------------------------ #
    # Main loop
    # ------------------------------------------------------------------ #

    def _slice(self, subtitles: list[SubtitleEntry], line: int) -> Batch:
        chunk = subtitles[line - 1 : line - 1 + self.session.batch_size]
        return Batch(start_line=line, entries=[{"index": e.id, "content": e.text} for e in chunk])

    def run(self, subtitles: list[SubtitleEntry]) -> bool:
        self._total = len(subtitles)
        start = max(1, int(self.job.start_line or 1))
        self.session.cursor = start
        if start > 1:
            self._seed_from_existing_output(subtitles, start)
        logger.info(f"从第 {start} 行开始翻译，共 {self._total} 行")

        attempts = 0
        tries = 0
        last_started: int | None = None
        try:
            while True:
                self.cancel_token.check()
                batch = self._slice(subtitles, self.session.cursor)
                if not batch.entries:
                    break
                if batch.start_line != last_started:
                    self.session.batch_number += 1
                    last_started = batch.start_line
                    attempts = tries = 0

                translated = self.process_batch(batch, retry=tries)
                if translated is None:
                    failure = self._last_failure
                    if failure is BatchFailure.RESIZED:
                        continue
                    tries += 1
                    if failure in (BatchFailure.VALIDATION, BatchFailure.TRANSPORT):
                        attempts += 1
                        if attempts >= self.settings.max_batch_retries:
                            self.reporter.on_error(
                                f"批次 {self.session.batch_number} 连续失败 {attempts} 次，放弃翻译"
                            )
                            self._flush(subtitles)
                            return False
                        if failure is BatchFailure.TRANSPORT:
                            self._sleep(retry_delay(attempts))
                    self.reporter.on_warning(f"批次 {self.session.batch_number} 处理失败，重试中...")
                    continue

                self._commit(batch, translated)
                if self.settings.free_quota and self.session.cursor <= self._total:
                    self._sleep(self.settings.free_quota_delay_s)
        except FatalModelError as exc:
            self.reporter.on_error(f"翻译中止: {exc}")
            self._flush(subtitles)
            return False
        except (CancelledByUser, KeyboardInterrupt, SystemExit):
            self.reporter.on_warning("翻译被中断，正在保存进度...")
            self._flush(subtitles)
            raise

        self._flush(subtitles, completed=True)
        self.reporter.on_progress(make_event(self._total, self._total, "完成"))
        logger.success(f"翻译完成: {self.job.output_file}")
        return True

    def _commit(self, batch: Batch, translated: list[dict[str, str]]) -> None:
        for item in translated:
            self.session.translations[item["index"]] = item["content"]
        missing = len(batch.entries) - len({item["index"] for item in translated})
        if missing > 0:
            self.reporter.on_warning(f"批次 {self.session.batch_number} 有 {missing} 条未翻译，保留原文")

        self.context.append(build_request(batch.entries), json.dumps(translated, ensure_ascii=False))
        self.session.cursor = batch.next_line
        self.progress_store.save(ProgressState(line=self.session.cursor, input_file=str(self.job.input_file)))

        self.reporter.on_batch_success(f"批次 {self.session.batch_number} 完成")
        self.reporter.on_progress(make_event(self.session.cursor - 1, self._total, f"批次 {self.session.batch_number} 完成"))

    # ------------------------------------------------------------------ #
    # One batch
    # ------------------------------------------------------------------ #

    def process_batch(self, batch: Batch, retry: int = 0) -> list[dict[str, str]] | None:
        """Send one batch and return its validated translations, or None if it has to be retried."""
        self._last_failure = None
        request_json = build_request(batch.entries)
        if not self._fits_token_limit(request_json):
            self._last_failure = BatchFailure.RESIZED
            return None

        messages = self.context.messages() + [{"role": "user", "content": request_json}]
        done_before = batch.start_line - 1
        self.reporter.on_progress(make_event(done_before, self._total, "发送批次..."))

        def _on_chunk(answer_len: int, thinking: bool) -> None:
            status = "思考中..." if thinking else f"处理中... 已接收 {answer_len} 字符"
            self.reporter.on_progress(make_event(done_before, self._total, status))

        try:
            reply = self.client.call(
                self.failover.active_key,
                self.model_config,
                messages,
                self.settings.streaming,
                on_chunk=_on_chunk,
            )
        except QuotaExceededError as exc:
            self.reporter.on_warning(f"API {self.failover.active_slot} 配额超限: {exc}")
            self.failover.on_quota_error()
            self._last_failure = BatchFailure.QUOTA
            return None
        except ModelTransportError as exc:
            self.reporter.on_warning(f"批次处理出错: {exc}")
            self._last_failure = BatchFailure.TRANSPORT
            return None

        if self.thoughts_log is not None and reply.thoughts:
            self.thoughts_log.append(reply.thoughts, self.session.batch_number, retry)
            label = f"{self.session.batch_number}.{retry}" if retry else str(self.session.batch_number)
            logger.info(f"批次 {label} 的思考过程已保存")

        translated = validate(reply.text, batch.entries, warn=self.reporter.on_warning)
        if translated is None:
            self._last_failure = BatchFailure.VALIDATION
            return None
        return translated

    def _fits_token_limit(self, request_json: str) -> bool:
        if not self._token_limit_checked:
            self._token_limit_checked = True
            self._token_limit = self.client.backend.token_limit(self.failover.active_key, self.settings.model_name)
        if not self._token_limit:
            return True
        context_chars = sum(len(m["content"]) for m in self.context.messages())
        estimated = (len(request_json) + context_chars) / CHARS_PER_TOKEN
        if estimated <= self._token_limit * TOKEN_LIMIT_RATIO or self.session.batch_size <= 1:
            return True
        new_size = max(1, int(self.session.batch_size * BATCH_SHRINK_RATIO))
        self.reporter.on_warning(
            f"预计 {int(estimated)} tokens 接近上限 {self._token_limit}，批次大小 {self.session.batch_size} -> {new_size}"
        )
        self.session.batch_size = new_size
        return False

    # ------------------------------------------------------------------ #
    # Output
    # ------------------------------------------------------------------ #

    def _seed_from_existing_output(self, subtitles: list[SubtitleEntry], start: int) -> None:
        """Pick up lines translated by an earlier, interrupted run."""
        output = self.job.output_file
        if output is None or not output.exists():
            return
        try:
            previous = {e.id: e.text for e in load_subtitles(output)}
        except SubtitleParseError as exc:
            logger.warning(f"无法读取已有输出，已忽略: {exc}")
            return
        for entry in subtitles[: start - 1]:
            if entry.id in previous:
                self.session.translations[entry.id] = previous[entry.id]

    def _flush(self, subtitles: list[SubtitleEntry], completed: bool = False) -> None:
        """Write validated translations and the cursor; at most one writer at a time."""
        with self._flush_lock, ignore_signals_during_shutdown():
            for entry in subtitles:
                if entry.id in self.session.translations:
                    entry.text = self.session.translations[entry.id]
            save_subtitles(subtitles, self.job.output_file)

            if completed:
                self.progress_store.clear()
            elif self.session.cursor <= self._total:
                self.progress_store.save(ProgressState(line=self.session.cursor, input_file=str(self.job.input_file)))

            if self.transcript is not None:
                self.transcript.save(self.job.work_dir / "progress.log")
