import os
from dotenv import load_dotenv

load_dotenv()  # Loads from .env file

class Settings:
    # Storage
    DATA_DIR = os.getenv("DATA_DIR", "./data")
    MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", int(1.1 * 1024 * 1024 * 1024)))
    # Realtime
    WS_MAX_MESSAGE_BYTES = int(os.getenv("WS_MAX_MESSAGE_BYTES", 1_000_000))
    WS_IDLE_TIMEOUT_SECONDS = float(os.getenv("WS_IDLE_TIMEOUT_SECONDS", 45))
    WS_PONG_TIMEOUT_SECONDS = float(os.getenv("WS_PONG_TIMEOUT_SECONDS", 10))
    # HTTP
    CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", 3001))
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    def __init__(self, **overrides):
        for name, value in overrides.items():
            if not hasattr(type(self), name):
                raise AttributeError(f"Unknown setting: {name}")
            setattr(self, name, value)

settings = Settings()
