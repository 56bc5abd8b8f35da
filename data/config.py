import os
from json import loads as json_loads

from dotenv import load_dotenv, find_dotenv

load_dotenv(find_dotenv())


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


config = {
    "bot": {
        "token": os.getenv("BOT_TOKEN", ""),
        "admin_ids": json_loads(os.getenv("ADMIN_IDS", "[]")),
        "second_ids": json_loads(os.getenv("SECOND_IDS", "[]")),
        "tg_server": os.getenv("TG_SERVER", "https://api.telegram.org"),
    },
    "api": {
        "api_link": os.getenv("API_LINK", ""),
    },
    "queue": {
        "max_concurrent_users": int(os.getenv("MAX_CONCURRENT_USERS", "50")),
        "max_concurrent_downloads": int(os.getenv("MAX_CONCURRENT_DOWNLOADS", "10")),
        "max_concurrent_uploads": int(os.getenv("MAX_CONCURRENT_UPLOADS", "5")),
        "max_sockets": int(os.getenv("MAX_SOCKETS", "100")),
        "session_timeout": float(os.getenv("SESSION_TIMEOUT", "300")),
        "sweep_interval": float(os.getenv("SWEEP_INTERVAL", "30")),
    },
    "retry": {
        "v1_max_retries": int(os.getenv("V1_MAX_RETRIES", "1")),
        "v2_max_retries": int(os.getenv("V2_MAX_RETRIES", "2")),
        "v2_fallback": _env_bool("V2_FALLBACK", "true"),
        "fetch_policy": os.getenv("FETCH_POLICY", "sequential").lower(),
        "race_grace_delay": float(os.getenv("RACE_GRACE_DELAY", "1.0")),
        "base_delay": float(os.getenv("RETRY_BASE_DELAY", "1.0")),
        "max_delay": float(os.getenv("RETRY_MAX_DELAY", "8.0")),
        "download_max_retries": int(os.getenv("DOWNLOAD_MAX_RETRIES", "3")),
        "stream_reopen_retries": int(os.getenv("STREAM_REOPEN_RETRIES", "2")),
    },
    "transfer": {
        "video_mode": os.getenv("VIDEO_MODE", "stream").lower(),
        "timeout": float(os.getenv("TRANSFER_TIMEOUT", "30")),
        "upload_timeout": int(os.getenv("UPLOAD_TIMEOUT", "120")),
        "max_redirects": int(os.getenv("MAX_REDIRECTS", "10")),
        "min_payload_bytes": int(os.getenv("MIN_PAYLOAD_BYTES", "1024")),
        "temp_dir": os.getenv("TEMP_DIR", "./temp"),
        "cookies_file": os.getenv("COOKIES_FILE", "cookies.txt"),
        "ytdlp_cookies": os.getenv("YTDLP_COOKIES", ""),
        "image_file_fallback": _env_bool("IMAGE_FILE_FALLBACK", "true"),
        "convert_images": _env_bool("CONVERT_IMAGES", "true"),
    },
    "delete": {
        "enabled": _env_bool("AUTO_DELETE", "true"),
        "delay": float(os.getenv("DELETE_DELAY", "2.0")),
        "only_in_groups": _env_bool("ONLY_IN_GROUPS", "true"),
        "delete_status_messages": _env_bool("DELETE_STATUS_MESSAGES", "true"),
    },
    "locale": {
        "default_lang": os.getenv("DEFAULT_LANG", "id"),
    },
}

admin_ids = config["bot"]["admin_ids"]
second_ids = admin_ids + config["bot"]["second_ids"]

_locale_path = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'locale.json')
with open(_locale_path, 'r', encoding='utf-8') as locale_file:
    locale = json_loads(locale_file.read())
