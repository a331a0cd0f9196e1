from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load .env file explicitly to ensure it works even if not in CWD
load_dotenv()

class Settings(BaseSettings):
    mongo_uri: str = "mongodb://localhost:27017"
    db_name: str = "CLASSQUEST"

    # Multi-document transactions need a replica set
    use_transactions: bool = False

    log_dir: str = "logs"
    experience_retry_limit: int = 5

    class Config:
        env_file = ".env"
        case_sensitive = False

# Global settings instance
try:
    settings = Settings()
except Exception as e:
    print(f"Error loading settings: {e}")
    raise
