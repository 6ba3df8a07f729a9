from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = "sqlite:///./pharmacy.db"
    log_level: str = "INFO"
    store_name: str = "FrahaPharmacy"
    loyalty_points_unit: int = 1000
    analytics_max_attempts: int = 5

    model_config = SettingsConfigDict(env_file=".env", env_prefix="", case_sensitive=False)


settings = Settings()
