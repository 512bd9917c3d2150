from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
	gemini_api_key: str | None = Field(default=None, validation_alias="GEMINI_API_KEY")
	# Provider can be "vertex" (Vertex AI Express) or "ai_studio" (Generative Language API)
	gemini_provider: str = Field(default="ai_studio", validation_alias="GEMINI_PROVIDER")
	gemini_model: str = Field(default="gemini-2.5-flash", validation_alias="GEMINI_MODEL")
	# Whole documents go inline, so allow more time than a plain text prompt
	gemini_timeout_seconds: float = Field(default=90.0, validation_alias="GEMINI_TIMEOUT_SECONDS")
	# Vertex configuration
	vertex_region: str = Field(default="us-central1", validation_alias="GEMINI_VERTEX_REGION")
	vertex_project: str | None = Field(default=None, validation_alias="GEMINI_VERTEX_PROJECT")

	# Session rules
	quick_quiz_batch_size: int = Field(default=5, ge=1, validation_alias="QUICK_QUIZ_BATCH_SIZE")
	quick_quiz_max_documents: int = Field(default=1, ge=1, validation_alias="QUICK_QUIZ_MAX_DOCUMENTS")
	exam_max_documents: int = Field(default=5, ge=1, validation_alias="EXAM_MAX_DOCUMENTS")
	max_upload_mb: int = Field(default=40, ge=1, validation_alias="MAX_UPLOAD_MB")

	# Persistence
	database_url: str | None = Field(default=None, validation_alias="DATABASE_URL")
	session_key: str = Field(default="quizmaster.session", validation_alias="SESSION_KEY")
	# Stored sessions untouched for longer than this are purged
	session_retention_days: int = Field(default=7, validation_alias="SESSION_RETENTION_DAYS")

	# Logging
	log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
	log_json: bool = Field(default=False, validation_alias="LOG_JSON")

	# pydantic-settings v2 style config
	model_config = SettingsConfigDict(env_file=".env", extra="ignore")

	@property
	def max_upload_bytes(self) -> int:
		return self.max_upload_mb * 1024 * 1024

settings = Settings()
