from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_SYNC_LABELS = ["INBOX"]


@dataclass(slots=True)
class OAuthClientConfig:
    client_id: str | None
    client_secret: str | None
    token_url: str = "https://oauth2.googleapis.com/token"
    revoke_url: str = "https://oauth2.googleapis.com/revoke"

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass(slots=True)
class Settings:
    root_dir: Path
    data_dir: Path
    db_path: Path
    logs_dir: Path
    gmail_client_secret_path: Path
    oauth: OAuthClientConfig
    api_base_url: str = "https://gmail.googleapis.com/gmail/v1"
    http_timeout_sec: float = 10.0
    retry_attempts: int = 4
    backoff_max_sec: float = 30.0
    token_refresh_buffer_sec: int = 300
    max_threads: int = 50
    history_page_size: int = 500
    sync_labels: list[str] = field(default_factory=lambda: DEFAULT_SYNC_LABELS.copy())

    @classmethod
    def load(cls, base_dir: Path | None = None) -> Settings:
        load_dotenv(override=False)

        root_env = os.getenv("MAILSYNC_HOME")
        root_dir = Path(root_env).expanduser().resolve() if root_env else (base_dir or Path.cwd()).resolve()

        data_dir = Path(os.getenv("MAILSYNC_DATA_DIR", root_dir / "data")).expanduser().resolve()
        db_path = Path(os.getenv("MAILSYNC_DB_PATH", data_dir / "mailsync.sqlite3")).expanduser().resolve()
        logs_dir = Path(os.getenv("MAILSYNC_LOG_DIR", root_dir / "logs")).expanduser().resolve()

        gmail_client_secret_path = Path(
            os.getenv("GMAIL_OAUTH_CLIENT_SECRET_PATH", root_dir / "secrets" / "gmail_client_secret.json")
        ).expanduser().resolve()

        oauth = cls._load_oauth_client(gmail_client_secret_path)

        labels_env = os.getenv("MAILSYNC_SYNC_LABELS")
        if labels_env:
            sync_labels = [label.strip() for label in labels_env.split(",") if label.strip()]
        else:
            sync_labels = DEFAULT_SYNC_LABELS.copy()

        return cls(
            root_dir=root_dir,
            data_dir=data_dir,
            db_path=db_path,
            logs_dir=logs_dir,
            gmail_client_secret_path=gmail_client_secret_path,
            oauth=oauth,
            api_base_url=os.getenv("GMAIL_API_BASE_URL", "https://gmail.googleapis.com/gmail/v1").rstrip("/"),
            http_timeout_sec=float(os.getenv("MAILSYNC_HTTP_TIMEOUT_SEC", "10")),
            retry_attempts=int(os.getenv("MAILSYNC_RETRY_ATTEMPTS", "4")),
            backoff_max_sec=float(os.getenv("MAILSYNC_BACKOFF_MAX_SEC", "30")),
            token_refresh_buffer_sec=int(os.getenv("MAILSYNC_TOKEN_REFRESH_BUFFER_SEC", "300")),
            max_threads=int(os.getenv("MAILSYNC_MAX_THREADS", "50")),
            history_page_size=int(os.getenv("MAILSYNC_HISTORY_PAGE_SIZE", "500")),
            sync_labels=sync_labels,
        )

    @staticmethod
    def _load_oauth_client(client_secret_path: Path) -> OAuthClientConfig:
        """
        Environment variables win over the downloaded client secret file.
        The file may be an "installed" or a "web" client, both carry the same keys.
        """
        client_id = os.getenv("GOOGLE_CLIENT_ID")
        client_secret = os.getenv("GOOGLE_CLIENT_SECRET")
        token_url = "https://oauth2.googleapis.com/token"

        if (not client_id or not client_secret) and client_secret_path.exists():
            try:
                with client_secret_path.open("r", encoding="utf-8-sig") as fh:
                    payload = json.load(fh)
            except json.JSONDecodeError as exc:
                raise ValueError(
                    f"Invalid OAuth client JSON: {client_secret_path}. Re-download it from the Google console."
                ) from exc
            section = payload.get("installed") or payload.get("web") or {}
            client_id = client_id or section.get("client_id")
            client_secret = client_secret or section.get("client_secret")
            token_url = section.get("token_uri", token_url)

        return OAuthClientConfig(client_id=client_id, client_secret=client_secret, token_url=token_url)

    def ensure_directories(self) -> None:
        for path in [self.root_dir, self.data_dir, self.logs_dir]:
            path.mkdir(parents=True, exist_ok=True)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
