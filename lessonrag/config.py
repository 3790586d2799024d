"""Application configuration with sensible defaults."""
import os
from pathlib import Path

# Paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("LESSONRAG_DATA_DIR", str(BASE_DIR / "data")))

# Chunking parameters (character-based to avoid tokenizer dependencies)
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "500"))
CHUNK_BOUNDARY_LOOKBACK = int(os.getenv("CHUNK_BOUNDARY_LOOKBACK", "100"))

# Retrieval parameters
RETRIEVAL_TOP_K = int(os.getenv("RETRIEVAL_TOP_K", "3"))
MAX_CONTEXT_CHARS = int(os.getenv("MAX_CONTEXT_CHARS", "4000"))

# Fail startup on a malformed embeddings snapshot instead of starting empty
STRICT_INDEX_LOAD = os.getenv("STRICT_INDEX_LOAD", "false").lower() in ("1", "true", "yes")

# Storage
DB_FILENAME = "chunks.sqlite"
EMBEDDINGS_FILENAME = "embeddings.json"
DB_PATH = DATA_DIR / DB_FILENAME
EMBEDDINGS_PATH = DATA_DIR / EMBEDDINGS_FILENAME

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
