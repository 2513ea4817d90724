from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    whatsapp_token: str = ""
    phone_number_id: str = ""
    graph_api_version: str = "v22.0"
    webhook_verify_token: str = ""

    llm_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("deepseek_api_key", "llm_api_key"),
    )
    llm_base_url: str = "https://api.deepseek.com/v1"
    llm_model: str = "deepseek-chat"
    llm_timeout_seconds: float = 30.0

    spreadsheet_id: str = ""
    google_credentials_file: str = Field(
        default="credentials.json",
        validation_alias=AliasChoices("google_application_credentials", "google_credentials_file"),
    )
    orders_sheet_name: str = "pedidos"

    catalog_url: str = (
        "https://s3.us-east-2.amazonaws.com/prueba.api.whatsapp/"
        "Copia+de+Catalogo+Dommo+%5BTama%C3%B1o+original%5D.pdf"
    )
    catalog_caption: str = "Catálogo Dommo"

    buffer_wait_seconds: float = 10.0
    buffer_patient_wait_seconds: float = 35.0
    buffer_cleanup_interval_seconds: float = 300.0
    related_defer_seconds: float = 10.0
    humanize_responses: bool = True

    alert_bot_token: str = ""
    alert_chat_id: str = ""

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
