"""FunnyBot chat session
======================

Core of the FunnyBot chat client.  A :class:`ChatSession` keeps two views of
the same conversation:

* the **display transcript** - newest-first chat bubbles, including notices
  such as rate-limit warnings and error messages, persisted to a small JSON
  key/value file so the transcript survives restarts;
* the **model history** - oldest-first role/content entries that start with a
  fixed persona prompt and are sent to the completion service on every turn.

Outgoing requests are spaced by a client-side :class:`RateLimiter`, and the
network exchange with the Groq (OpenAI compatible) chat-completion endpoint is
handled by :class:`CompletionClient`, which maps every failure into a
:class:`CompletionResult` instead of raising.  The presentation layer lives in
``funnybot_gui``; nothing in this module touches a widget toolkit, so every
transition can be exercised from plain unit tests.
"""

from __future__ import annotations

import json
import logging
import os
import re
import statistics
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    MutableMapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
)

import requests
from dotenv import dotenv_values
from requests import Response


# ---------------------------------------------------------------------------
# Logging infrastructure
# ---------------------------------------------------------------------------

def _build_logger() -> logging.Logger:
    """Configure the ``funnybot`` logger once with a stdout handler."""

    logger = logging.getLogger("funnybot")
    if logger.handlers:
        return logger

    handler = logging.StreamHandler()
    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(threadName)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    return logger


LOGGER = _build_logger()


# ---------------------------------------------------------------------------
# Custom exceptions
# ---------------------------------------------------------------------------

class ChatError(RuntimeError):
    """Base class for every error raised by the chat client."""


class ConfigurationError(ChatError):
    """Raised when the application configuration is invalid."""


class ChatStorageError(ChatError):
    """Raised when the chat transcript cannot be read or persisted."""


class CompletionError(ChatError):
    """A single completion exchange failed.

    Subclasses decide how the failure reads inside the chat transcript via
    :meth:`display_text`.
    """

    display_prefix = ""

    def display_text(self) -> str:
        return f"{self.display_prefix}{self}"


class CredentialMissingError(CompletionError):
    """Raised when no bearer token is configured for the completion service."""


class ApiError(CompletionError):
    """The completion service answered with a non-success status."""

    display_prefix = "API Error: "

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransportError(CompletionError):
    """The request never produced a usable response (network or parse failure)."""

    display_prefix = "Could not reach the chat service: "


# ---------------------------------------------------------------------------
# Configuration handling
# ---------------------------------------------------------------------------

CREDENTIAL_ENV_VAR = "GROQ_API_KEY"
MISSING_CREDENTIAL_MESSAGE = f"{CREDENTIAL_ENV_VAR} is missing."

DEFAULT_API_URL = "https://api.groq.com/openai/v1/chat/completions"
DEFAULT_MODEL = "meta-llama/llama-4-scout-17b-16e-instruct"
DEFAULT_SYSTEM_PROMPT = (
    "You are a funny chatbot. Respond to all user inputs with humor. "
    "Also remember user's name if they tell you."
)
DEFAULT_TEMPERATURE = 0.7
DEFAULT_TOP_P = 1.0
DEFAULT_MAX_TOKENS = 1024
DEFAULT_MIN_INTERVAL = 3.0


@dataclass(slots=True)
class AppPaths:
    """Container for the filesystem locations used by the application."""

    base_dir: Path = field(default_factory=lambda: Path.cwd())
    config_file_name: str = "funnybot.json"
    env_file_name: str = ".env"
    store_file_name: str = "funnybot_store.json"

    @property
    def config_path(self) -> Path:
        return self.base_dir / self.config_file_name

    @property
    def env_path(self) -> Path:
        return self.base_dir / self.env_file_name

    @property
    def store_path(self) -> Path:
        return self.base_dir / self.store_file_name


def load_env_file(path: Path) -> Dict[str, str]:
    """Read the values of a ``.env`` file without touching ``os.environ``.

    A missing file yields an empty mapping; keys declared without a value
    are skipped.
    """

    if not path.is_file():
        return {}
    try:
        values = dotenv_values(path, encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"Could not read environment file {path}") from exc
    return {key: value for key, value in values.items() if value is not None}


def _parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        return bool(json.loads(value.lower()))
    return bool(value)


@dataclass(slots=True)
class AppConfig:
    """Settings for the completion service and the session behaviour."""

    api_url: str = DEFAULT_API_URL
    model_name: str = DEFAULT_MODEL
    api_key: Optional[str] = None
    temperature: float = DEFAULT_TEMPERATURE
    top_p: float = DEFAULT_TOP_P
    max_tokens: int = DEFAULT_MAX_TOKENS
    timeout: Optional[float] = None
    min_request_interval: float = DEFAULT_MIN_INTERVAL
    history_window: int = 0
    verify_tls: bool = True
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    @classmethod
    def from_env(cls, paths: AppPaths) -> "AppConfig":
        """Load configuration from the environment, a ``.env`` file or disk.

        Precedence order (highest to lowest): process environment variables,
        the ``.env`` file in the base directory, the JSON configuration file,
        built-in defaults.  Only the credential is usually needed:

        ```json
        {
            "api_key": "gsk_...",
            "history_window": 40
        }
        ```
        """

        config_data: Dict[str, Any] = {}
        if paths.config_path.exists():
            try:
                config_data = json.loads(paths.config_path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as exc:
                raise ConfigurationError(
                    f"Configuration file {paths.config_path} contains invalid JSON"
                ) from exc
            if not isinstance(config_data, dict):
                raise ConfigurationError(
                    f"Configuration file {paths.config_path} must contain a JSON object"
                )

        dotenv = load_env_file(paths.env_path)

        def setting(env_name: str, key: str, default: Any) -> Any:
            value = os.getenv(env_name)
            if value is None:
                value = dotenv.get(env_name)
            if value is None:
                value = config_data.get(key, default)
            return value

        try:
            timeout = setting("FUNNYBOT_TIMEOUT", "timeout", None)
            data = {
                "api_url": str(setting("FUNNYBOT_API_URL", "api_url", DEFAULT_API_URL)),
                "model_name": str(setting("FUNNYBOT_MODEL", "model_name", DEFAULT_MODEL)),
                "api_key": setting(CREDENTIAL_ENV_VAR, "api_key", None) or None,
                "temperature": float(
                    setting("FUNNYBOT_TEMPERATURE", "temperature", DEFAULT_TEMPERATURE)
                ),
                "top_p": float(setting("FUNNYBOT_TOP_P", "top_p", DEFAULT_TOP_P)),
                "max_tokens": int(
                    setting("FUNNYBOT_MAX_TOKENS", "max_tokens", DEFAULT_MAX_TOKENS)
                ),
                "timeout": float(timeout) if timeout not in (None, "") else None,
                "min_request_interval": float(
                    setting(
                        "FUNNYBOT_MIN_INTERVAL",
                        "min_request_interval",
                        DEFAULT_MIN_INTERVAL,
                    )
                ),
                "history_window": int(
                    setting("FUNNYBOT_HISTORY_WINDOW", "history_window", 0)
                ),
                "verify_tls": _parse_bool(
                    setting("FUNNYBOT_VERIFY_TLS", "verify_tls", True)
                ),
                "system_prompt": str(
                    setting("FUNNYBOT_SYSTEM_PROMPT", "system_prompt", DEFAULT_SYSTEM_PROMPT)
                ),
            }
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid configuration value: {exc}") from exc

        config = cls(**data)
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration fields and raise :class:`ConfigurationError`."""

        if not re.match(r"^https?://", self.api_url or ""):
            raise ConfigurationError("API URL must start with http:// or https://")
        if not self.model_name:
            raise ConfigurationError("Model name is required")
        if not 0.0 <= self.temperature <= 2.0:
            raise ConfigurationError("Temperature must be between 0 and 2")
        if not 0.0 < self.top_p <= 1.0:
            raise ConfigurationError("top_p must be in the range (0, 1]")
        if self.max_tokens < 1:
            raise ConfigurationError("max_tokens must be at least 1")
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigurationError("Timeout must be positive")
        if self.min_request_interval < 0:
            raise ConfigurationError("Minimum request interval cannot be negative")
        if self.history_window < 0:
            raise ConfigurationError("History window cannot be negative")
        if not self.system_prompt.strip():
            raise ConfigurationError("System prompt is required")

    def require_credential(self) -> None:
        """Startup check: the application cannot run without a bearer token."""

        if not self.api_key:
            raise ConfigurationError(
                f"{CREDENTIAL_ENV_VAR} is missing in the environment or .env file!"
            )


# ---------------------------------------------------------------------------
# Metrics support
# ---------------------------------------------------------------------------

class MetricsTracker:
    """Tracks latency and failures of completion requests in memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._durations: List[float] = []
        self._failures: int = 0

    def record(self, duration: float, success: bool) -> None:
        with self._lock:
            if success:
                self._durations.append(duration)
            else:
                self._failures += 1

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            durations = list(self._durations)
            failures = self._failures
        if not durations:
            return {"count": 0, "mean": 0.0, "p95": 0.0, "last": 0.0, "failures": failures}
        p95 = statistics.quantiles(durations, n=100)[94] if len(durations) > 1 else durations[0]
        return {
            "count": len(durations),
            "mean": statistics.fmean(durations),
            "p95": p95,
            "last": durations[-1],
            "failures": failures,
        }


# ---------------------------------------------------------------------------
# Input sanitisation
# ---------------------------------------------------------------------------

class InputSanitiser:
    """Ensure user supplied text is suitable for the language model."""

    _CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

    @classmethod
    def sanitise(cls, text: str) -> str:
        """Remove control characters and surrounding whitespace."""

        cleaned = cls._CONTROL_CHAR_PATTERN.sub("", text or "")
        cleaned = cleaned.strip()
        if not cleaned:
            raise ValueError("Input is empty or contains only invalid characters")
        return cleaned


# ---------------------------------------------------------------------------
# Display transcript and its persistence
# ---------------------------------------------------------------------------

SNAPSHOT_KEY = "chatMessages"


def _new_message_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True, slots=True)
class ChatMessage:
    """A chat bubble shown to the user."""

    text: str
    is_user: bool
    id: str = field(default_factory=_new_message_id)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "text": self.text, "isUser": self.is_user}

    @classmethod
    def from_dict(cls, payload: MutableMapping[str, Any]) -> "ChatMessage":
        # snapshots written before messages carried ids get a fresh one
        message_id = payload.get("id")
        return cls(
            text=str(payload.get("text", "")),
            is_user=bool(payload.get("isUser", False)),
            id=str(message_id) if message_id else _new_message_id(),
        )


class KeyValueStore:
    """Durable key/value store backed by a single JSON document.

    Every write rewrites the whole document through a temporary file so a
    crash mid-write never leaves a truncated store behind.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._read_all().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            try:
                data = self._read_all()
            except ChatStorageError as exc:
                LOGGER.warning("Discarding unreadable store %s: %s", self._path, exc)
                data = {}
            data[key] = value
            self._write_all(data)

    def remove(self, key: str) -> bool:
        with self._lock:
            data = self._read_all()
            if key not in data:
                return False
            del data[key]
            self._write_all(data)
            return True

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._read_all()

    def _read_all(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ChatStorageError(f"Store file {self._path} is corrupted") from exc
        except OSError as exc:
            raise ChatStorageError(f"Could not read store file {self._path}") from exc
        if not isinstance(data, dict):
            raise ChatStorageError(f"Store file {self._path} does not hold a JSON object")
        return data

    def _write_all(self, data: Dict[str, Any]) -> None:
        tmp_path = self._path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
            tmp_path.replace(self._path)
        except (OSError, TypeError, ValueError) as exc:
            raise ChatStorageError(f"Could not write store file {self._path}") from exc


class MessageStore:
    """Newest-first list of display messages plus its durable snapshot."""

    def __init__(self, backend: KeyValueStore, key: str = SNAPSHOT_KEY) -> None:
        self._backend = backend
        self._key = key
        self._messages: List[ChatMessage] = []
        self._lock = threading.RLock()

    def append(self, message: ChatMessage) -> None:
        with self._lock:
            self._messages.insert(0, message)

    def clear(self) -> None:
        with self._lock:
            self._messages.clear()

    def snapshot(self) -> Tuple[ChatMessage, ...]:
        with self._lock:
            return tuple(self._messages)

    def head(self) -> Optional[ChatMessage]:
        with self._lock:
            return self._messages[0] if self._messages else None

    def persist(self, snapshot: Optional[Iterable[ChatMessage]] = None) -> None:
        """Overwrite the durable snapshot with ``snapshot`` (default: current list)."""

        messages = self.snapshot() if snapshot is None else tuple(snapshot)
        self._backend.set(self._key, [message.to_dict() for message in messages])

    def load(self) -> bool:
        """Replace the in-memory list with the stored snapshot, if there is one."""

        records = self._backend.get(self._key)
        if records is None:
            return False
        if not isinstance(records, list):
            raise ChatStorageError("Stored transcript is not a list")
        messages = [self._decode(record) for record in records]
        with self._lock:
            self._messages = messages
        return True

    def discard_snapshot(self) -> None:
        self._backend.remove(self._key)

    @staticmethod
    def _decode(record: Any) -> ChatMessage:
        # the mobile client stored each message as its own JSON string
        if isinstance(record, str):
            try:
                record = json.loads(record)
            except json.JSONDecodeError as exc:
                raise ChatStorageError("Stored message is not valid JSON") from exc
        if not isinstance(record, dict):
            raise ChatStorageError(f"Unexpected stored message: {record!r}")
        return ChatMessage.from_dict(record)

    def __len__(self) -> int:
        with self._lock:
            return len(self._messages)

    def __iter__(self) -> Iterator[ChatMessage]:
        return iter(self.snapshot())


# ---------------------------------------------------------------------------
# Model-facing conversation history
# ---------------------------------------------------------------------------

class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    """A role-tagged turn sent to the completion service."""

    role: Role
    content: str

    def to_payload(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class HistoryWindow(Protocol):
    """Chooses which history entries are sent with a request."""

    def select(self, entries: Sequence[HistoryEntry]) -> List[HistoryEntry]:
        ...


class UnboundedWindow:
    """Send the complete history."""

    def select(self, entries: Sequence[HistoryEntry]) -> List[HistoryEntry]:
        return list(entries)


class EntryCountWindow:
    """Send the system entry followed by the newest ``max_entries`` turns."""

    def __init__(self, max_entries: int) -> None:
        if max_entries < 1:
            raise ValueError("Window must keep at least one entry")
        self.max_entries = max_entries

    def select(self, entries: Sequence[HistoryEntry]) -> List[HistoryEntry]:
        if not entries:
            return []
        system, turns = entries[0], list(entries[1:])
        return [system] + turns[-self.max_entries:]


def window_for(limit: int) -> HistoryWindow:
    """Map a configured ``history_window`` (0 = unbounded) to a strategy."""

    return EntryCountWindow(limit) if limit > 0 else UnboundedWindow()


class ConversationHistory:
    """Oldest-first history that always starts with the persona prompt.

    Entries are only ever appended; the sole way to remove anything is
    :meth:`reset`, which truncates back to the system entry.
    """

    def __init__(
        self,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        window: Optional[HistoryWindow] = None,
    ) -> None:
        self._system_entry = HistoryEntry(Role.SYSTEM, system_prompt)
        self._window = window or UnboundedWindow()
        self._entries: List[HistoryEntry] = [self._system_entry]
        self._lock = threading.RLock()

    def reset(self) -> None:
        with self._lock:
            self._entries = [self._system_entry]

    def append_user(self, text: str) -> None:
        with self._lock:
            self._entries.append(HistoryEntry(Role.USER, text))

    def append_assistant(self, text: str) -> None:
        with self._lock:
            self._entries.append(HistoryEntry(Role.ASSISTANT, text))

    def entries(self) -> List[HistoryEntry]:
        with self._lock:
            return list(self._entries)

    def windowed(self) -> List[HistoryEntry]:
        """Entries to send with the next request."""
        with self._lock:
            return self._window.select(self._entries)

    def as_payload(self) -> List[Dict[str, str]]:
        return [entry.to_payload() for entry in self.windowed()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------

class RateDecision(Enum):
    ALLOW = "allow"
    DENY = "deny"


class RateLimiter:
    """Minimum spacing between accepted outgoing requests.

    :meth:`try_acquire` only inspects state; the caller records the accepted
    timestamp with :meth:`record`, so a denied attempt never pushes the
    window forward.
    """

    def __init__(self, min_interval: float = DEFAULT_MIN_INTERVAL) -> None:
        if min_interval < 0:
            raise ValueError("Minimum interval cannot be negative")
        self.min_interval = min_interval
        self._last_accepted: Optional[float] = None

    @property
    def last_accepted(self) -> Optional[float]:
        return self._last_accepted

    def try_acquire(self, now: float) -> RateDecision:
        if self._last_accepted is None or now - self._last_accepted >= self.min_interval:
            return RateDecision.ALLOW
        return RateDecision.DENY

    def record(self, now: float) -> None:
        self._last_accepted = now

    def seconds_remaining(self, now: float) -> float:
        if self._last_accepted is None:
            return 0.0
        return max(0.0, self.min_interval - (now - self._last_accepted))


# ---------------------------------------------------------------------------
# HTTP client for the completion service
# ---------------------------------------------------------------------------

FALLBACK_REPLY = "🤖 Oops! I couldn't think of a funny reply. Try again!"
UNKNOWN_API_ERROR = "Unknown API error"


@dataclass(frozen=True, slots=True)
class CompletionResult:
    """Outcome of one completion exchange: a reply or an error, never both."""

    reply: Optional[str] = None
    error: Optional[CompletionError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, reply: str) -> "CompletionResult":
        return cls(reply=reply)

    @classmethod
    def failure(cls, error: CompletionError) -> "CompletionResult":
        return cls(error=error)


class CompletionClient:
    """Handles communication with the chat-completion backend.

    Each :meth:`complete` call makes exactly one HTTP attempt; retrying is
    left to the user.
    """

    def __init__(
        self,
        config: AppConfig,
        metrics: Optional[MetricsTracker] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._config = config
        self._metrics = metrics or MetricsTracker()
        self._session = session or requests.Session()
        self._session.headers.update({"Content-Type": "application/json"})

    def close(self) -> None:
        self._session.close()

    def has_credential(self) -> bool:
        return bool(self._config.api_key)

    def build_payload(self, history: Sequence[HistoryEntry]) -> Dict[str, Any]:
        return {
            "model": self._config.model_name,
            "messages": [entry.to_payload() for entry in history],
            "temperature": self._config.temperature,
            "top_p": self._config.top_p,
            "max_tokens": self._config.max_tokens,
        }

    def complete(self, history: Sequence[HistoryEntry]) -> CompletionResult:
        """Send ``history`` and return the assistant's reply or the failure."""

        entries = list(history)
        if not entries:
            raise ValueError("History must contain at least the system entry")
        if entries[0].role is not Role.SYSTEM:
            raise ValueError("History must start with the system entry")

        try:
            reply = self._exchange(entries)
        except CompletionError as exc:
            LOGGER.error("Completion failed: %s", exc)
            return CompletionResult.failure(exc)
        return CompletionResult.success(reply)

    def _exchange(self, entries: List[HistoryEntry]) -> str:
        api_key = self._config.api_key
        if not api_key:
            raise CredentialMissingError(MISSING_CREDENTIAL_MESSAGE)

        payload = self.build_payload(entries)
        LOGGER.info("Dispatching %d history entries to %s", len(entries), self._config.model_name)
        start = time.perf_counter()
        try:
            response = self._session.post(
                self._config.api_url,
                json=payload,
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=self._config.timeout,
                verify=self._config.verify_tls,
            )
        except requests.RequestException as exc:
            self._metrics.record(time.perf_counter() - start, success=False)
            raise TransportError(str(exc) or exc.__class__.__name__) from exc

        duration = time.perf_counter() - start
        LOGGER.info("Response status: %s (%.2fs)", response.status_code, duration)
        LOGGER.debug("Response body: %s", response.text)

        if response.status_code != 200:
            self._metrics.record(duration, success=False)
            raise ApiError(self._summarise_error(response), status_code=response.status_code)

        try:
            data = response.json()
        except ValueError as exc:
            self._metrics.record(duration, success=False)
            raise TransportError("Malformed JSON received from the chat service") from exc

        self._metrics.record(duration, success=True)
        return self._extract_content(data)

    @staticmethod
    def _extract_content(data: Any) -> str:
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None
        if not isinstance(content, str):
            LOGGER.warning("Completion response carried no content, using fallback reply")
            return FALLBACK_REPLY
        return content

    @staticmethod
    def _summarise_error(response: Response) -> str:
        """Pull ``error.message`` out of an error envelope."""

        try:
            data = response.json()
        except ValueError:
            return UNKNOWN_API_ERROR
        error = data.get("error") if isinstance(data, dict) else None
        if isinstance(error, dict):
            error = error.get("message")
        if isinstance(error, str) and error.strip():
            return error.strip()
        return UNKNOWN_API_ERROR


# ---------------------------------------------------------------------------
# Session controller
# ---------------------------------------------------------------------------

RATE_LIMIT_NOTICE = "🚀 Please wait a few seconds before sending another message."
ERROR_PREFIX = "⚠️ "


class SessionState(Enum):
    IDLE = "idle"
    SENDING = "sending"


class SubmitOutcome(Enum):
    REPLIED = "replied"
    FAILED = "failed"
    RATE_LIMITED = "rate_limited"
    CREDENTIAL_MISSING = "credential_missing"
    BUSY = "busy"
    EMPTY = "empty"


class ChatSession:
    """Owns the session state and drives one exchange at a time.

    The lock guards every state mutation but is released while the network
    call runs, so readers (rendering, speech) are never blocked by a slow
    backend.  A second :meth:`submit` during that window sees
    :attr:`SessionState.SENDING` and is rejected.

    Persistence runs on a single background worker after each mutation.  The
    in-memory transcript is authoritative; write failures are logged and
    handed to ``on_persist_error``.
    """

    def __init__(
        self,
        store: MessageStore,
        history: ConversationHistory,
        limiter: RateLimiter,
        client: CompletionClient,
        clock: Callable[[], float] = time.monotonic,
        on_persist_error: Optional[Callable[[ChatStorageError], None]] = None,
    ) -> None:
        self._store = store
        self._history = history
        self._limiter = limiter
        self._client = client
        self._clock = clock
        self._on_persist_error = on_persist_error
        self._state = SessionState.IDLE
        self._lock = threading.RLock()
        self._listeners: List[Callable[["ChatSession"], None]] = []
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ChatPersistence")
        self._last_write: Optional[Future] = None

    # -- read-only views -------------------------------------------------

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def is_typing(self) -> bool:
        return self.state is SessionState.SENDING

    @property
    def messages(self) -> Tuple[ChatMessage, ...]:
        return self._store.snapshot()

    @property
    def history(self) -> List[HistoryEntry]:
        return self._history.entries()

    def add_listener(self, callback: Callable[["ChatSession"], None]) -> None:
        """Register ``callback`` to be invoked after every state change."""
        self._listeners.append(callback)

    # -- operations --------------------------------------------------------

    def load(self) -> bool:
        """Restore the display transcript saved by a previous run."""

        with self._lock:
            try:
                restored = self._store.load()
            except ChatStorageError as exc:
                LOGGER.error("Failed to load chat transcript: %s", exc)
                self._report_storage_error(exc)
                return False
        if restored:
            LOGGER.info("Restored %d messages from disk", len(self._store))
            self._notify()
        return restored

    def submit(self, text: str) -> SubmitOutcome:
        """Process user input, query the backend and record the outcome."""

        with self._lock:
            outcome = self._begin_exchange(text)
            request = self._history.windowed() if outcome is None else None

        if outcome is not None:
            if outcome in (SubmitOutcome.RATE_LIMITED, SubmitOutcome.CREDENTIAL_MISSING):
                self._notify()
            return outcome

        try:
            self._notify()
            result = self._client.complete(request)
        except Exception:
            with self._lock:
                self._state = SessionState.IDLE
            self._notify()
            raise

        with self._lock:
            self._finish_exchange(result)
        self._notify()
        return SubmitOutcome.REPLIED if result.ok else SubmitOutcome.FAILED

    def clear(self, confirm: Callable[[], bool]) -> bool:
        """Wipe transcript, history and snapshot once ``confirm`` agrees."""

        with self._lock:
            if self._state is SessionState.SENDING or not len(self._store):
                return False
        if not confirm():
            return False
        with self._lock:
            if self._state is SessionState.SENDING:
                return False
            self._store.clear()
            self._history.reset()
            self._schedule(self._store.discard_snapshot)
        LOGGER.info("Chat cleared")
        self._notify()
        return True

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for queued persistence work; False if it did not finish in time."""

        with self._lock:
            pending = self._last_write
        if pending is None:
            return True
        done, _ = wait([pending], timeout=timeout)
        return bool(done)

    def shutdown(self) -> None:
        LOGGER.info("Shutting down chat session")
        self.flush()
        self._executor.shutdown(wait=True)
        self._client.close()

    # -- internals ---------------------------------------------------------

    def _begin_exchange(self, text: str) -> Optional[SubmitOutcome]:
        if self._state is SessionState.SENDING:
            LOGGER.debug("Rejected submission while a request is in flight")
            return SubmitOutcome.BUSY
        try:
            cleaned = InputSanitiser.sanitise(text)
        except ValueError:
            return SubmitOutcome.EMPTY

        now = self._clock()
        if self._limiter.try_acquire(now) is RateDecision.DENY:
            LOGGER.info(
                "Rate limited, next request allowed in %.1fs",
                self._limiter.seconds_remaining(now),
            )
            self._store.append(ChatMessage(text=RATE_LIMIT_NOTICE, is_user=False))
            self._schedule_persist()
            return SubmitOutcome.RATE_LIMITED
        self._limiter.record(now)

        self._store.append(ChatMessage(text=cleaned, is_user=True))
        if not self._client.has_credential():
            LOGGER.error("Cannot send message: %s", MISSING_CREDENTIAL_MESSAGE)
            self._append_error(CredentialMissingError(MISSING_CREDENTIAL_MESSAGE))
            self._schedule_persist()
            return SubmitOutcome.CREDENTIAL_MISSING

        self._history.append_user(cleaned)
        self._schedule_persist()
        self._state = SessionState.SENDING
        return None

    def _finish_exchange(self, result: CompletionResult) -> None:
        if result.ok and result.reply is not None:
            self._store.append(ChatMessage(text=result.reply, is_user=False))
            self._history.append_assistant(result.reply)
        elif result.error is not None:
            self._append_error(result.error)
        self._state = SessionState.IDLE
        self._schedule_persist()

    def _append_error(self, error: CompletionError) -> None:
        self._store.append(ChatMessage(text=ERROR_PREFIX + error.display_text(), is_user=False))

    def _schedule_persist(self) -> None:
        self._schedule(self._store.persist, self._store.snapshot())

    def _schedule(self, task: Callable[..., None], *args: Any) -> None:
        self._last_write = self._executor.submit(self._run_storage_task, task, *args)

    def _run_storage_task(self, task: Callable[..., None], *args: Any) -> bool:
        try:
            task(*args)
        except ChatStorageError as exc:
            LOGGER.warning("Could not persist chat transcript: %s", exc)
            self._report_storage_error(exc)
            return False
        return True

    def _report_storage_error(self, exc: ChatStorageError) -> None:
        if self._on_persist_error is not None:
            self._on_persist_error(exc)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)


# ---------------------------------------------------------------------------
# Speech input/output coordination
# ---------------------------------------------------------------------------

class SpeechRecognizer(Protocol):
    """Speech-to-text device."""

    def start(self, on_result: Callable[[str], None]) -> bool:
        """Begin listening; False when recognition is unavailable."""
        ...

    def stop(self) -> None:
        ...


class SpeechSynthesizer(Protocol):
    """Text-to-speech device.  ``on_done`` fires when playback ends or fails."""

    def speak(self, text: str, on_done: Callable[[], None]) -> None:
        ...

    def stop(self) -> None:
        ...


class ListeningState(Enum):
    IDLE = "idle"
    LISTENING = "listening"


class SpeechCoordinator:
    """Drives the speech devices without touching session state.

    Recognized words go to the caller's ``on_text`` (normally the pending
    input field); playback is keyed by message id so a second tap on the
    same bubble stops it.
    """

    def __init__(
        self,
        recognizer: Optional[SpeechRecognizer] = None,
        synthesizer: Optional[SpeechSynthesizer] = None,
    ) -> None:
        self._recognizer = recognizer
        self._synthesizer = synthesizer
        self._lock = threading.Lock()
        self._listening = ListeningState.IDLE
        self._speaking_id: Optional[str] = None

    @property
    def can_listen(self) -> bool:
        return self._recognizer is not None

    @property
    def can_speak(self) -> bool:
        return self._synthesizer is not None

    @property
    def listening(self) -> ListeningState:
        with self._lock:
            return self._listening

    @property
    def speaking_id(self) -> Optional[str]:
        with self._lock:
            return self._speaking_id

    def toggle_listening(self, on_text: Callable[[str], None]) -> bool:
        if self._recognizer is None:
            return False
        if self.listening is ListeningState.LISTENING:
            self._recognizer.stop()
            with self._lock:
                self._listening = ListeningState.IDLE
            return True
        if not self._recognizer.start(on_text):
            LOGGER.warning("Speech recognition is not available")
            return False
        with self._lock:
            self._listening = ListeningState.LISTENING
        return True

    def toggle_playback(self, message: ChatMessage) -> bool:
        if self._synthesizer is None:
            return False
        current = self.speaking_id
        self._synthesizer.stop()
        if current == message.id:
            with self._lock:
                self._speaking_id = None
            return True
        with self._lock:
            self._speaking_id = message.id
        self._synthesizer.speak(message.text, lambda: self._playback_finished(message.id))
        return True

    def stop_all(self) -> None:
        if self._recognizer is not None and self.listening is ListeningState.LISTENING:
            self._recognizer.stop()
        if self._synthesizer is not None and self.speaking_id is not None:
            self._synthesizer.stop()
        with self._lock:
            self._listening = ListeningState.IDLE
            self._speaking_id = None

    def _playback_finished(self, message_id: str) -> None:
        with self._lock:
            if self._speaking_id == message_id:
                self._speaking_id = None


# ---------------------------------------------------------------------------
# Session bootstrap
# ---------------------------------------------------------------------------

def build_session(
    config: AppConfig,
    paths: AppPaths,
    metrics: Optional[MetricsTracker] = None,
    http_session: Optional[requests.Session] = None,
    on_persist_error: Optional[Callable[[ChatStorageError], None]] = None,
) -> ChatSession:
    """Wire the session components together and restore the saved transcript."""

    store = MessageStore(KeyValueStore(paths.store_path))
    history = ConversationHistory(config.system_prompt, window_for(config.history_window))
    limiter = RateLimiter(config.min_request_interval)
    client = CompletionClient(config, metrics, session=http_session)
    session = ChatSession(store, history, limiter, client, on_persist_error=on_persist_error)
    session.load()
    return session
