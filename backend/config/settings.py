"""
Django settings for the DocQA backend.
"""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent

# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = os.getenv('SECRET_KEY', 'django-insecure-dev-key-change-in-production')

# SECURITY WARNING: don't run with debug turned on in production!
DEBUG = os.getenv('DEBUG', 'False').lower() in ('true', '1', 'yes')

ALLOWED_HOSTS = [
    h.strip() for h in os.getenv('ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',')
]

# Application definition
INSTALLED_APPS = [
    'django.contrib.contenttypes',
    'apps.indexing',
    'apps.rag',
]

MIDDLEWARE = []

TEMPLATES = []

# Database
# Using environment variable for database URL
DATABASE_URL = os.getenv('DATABASE_URL', '')
if DATABASE_URL:
    import re
    match = re.match(
        r'postgres(?:ql)?://(?P<user>[^:]+):(?P<password>[^@]+)@(?P<host>[^:]+):(?P<port>\d+)/(?P<name>.+)',
        DATABASE_URL
    )
    if match:
        DATABASES = {
            'default': {
                'ENGINE': 'django.db.backends.postgresql',
                'NAME': match.group('name'),
                'USER': match.group('user'),
                'PASSWORD': match.group('password'),
                'HOST': match.group('host'),
                'PORT': match.group('port'),
            }
        }
    else:
        DATABASES = {
            'default': {
                'ENGINE': 'django.db.backends.sqlite3',
                'NAME': BASE_DIR / 'db.sqlite3',
            }
        }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': BASE_DIR / 'db.sqlite3',
        }
    }

# Internationalization
LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

# Default primary key field type
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# =============================================================================
# Text completion
# =============================================================================
# "openai" for any OpenAI-compatible API (Hugging Face router by default),
# "ollama" for local inference
LLM_PROVIDER = os.getenv('LLM_PROVIDER', 'openai')

OPENAI_BASE_URL = os.getenv('OPENAI_BASE_URL', 'https://router.huggingface.co/v1')
OPENAI_API_KEY = os.getenv('OPENAI_API_KEY', os.getenv('HF_TOKEN', ''))
OPENAI_MODEL = os.getenv('OPENAI_MODEL', 'Qwen/Qwen2.5-Coder-32B-Instruct')
OPENAI_TIMEOUT = int(os.getenv('OPENAI_TIMEOUT', '120'))

OLLAMA_BASE_URL = os.getenv('OLLAMA_BASE_URL', 'http://ollama:11434')
OLLAMA_CHAT_MODEL = os.getenv('OLLAMA_CHAT_MODEL', 'llama3.2')
OLLAMA_CHAT_TIMEOUT = int(os.getenv('OLLAMA_CHAT_TIMEOUT', '600'))  # 10 min

# =============================================================================
# Embeddings
# =============================================================================
# "huggingface" or "ollama"
EMBEDDING_PROVIDER = os.getenv('EMBEDDING_PROVIDER', 'huggingface')

HF_BASE_URL = os.getenv('HF_BASE_URL', 'https://router.huggingface.co/hf-inference')
HF_TOKEN = os.getenv('HF_TOKEN', '')
HF_EMBEDDING_MODEL = os.getenv('HF_EMBEDDING_MODEL', 'sentence-transformers/all-MiniLM-L6-v2')
OLLAMA_EMBED_MODEL = os.getenv('OLLAMA_EMBED_MODEL', 'all-minilm')
EMBEDDING_TIMEOUT = int(os.getenv('EMBEDDING_TIMEOUT', '60'))

# Thread pool size for indexing; 1 keeps batch embedding sequential
EMBEDDING_MAX_WORKERS = int(os.getenv('EMBEDDING_MAX_WORKERS', '1'))

# Query embedding cache (LRU). TTL in seconds, 0 = entries never expire
EMBEDDING_CACHE_SIZE = int(os.getenv('EMBEDDING_CACHE_SIZE', '1024'))
EMBEDDING_CACHE_TTL = int(os.getenv('EMBEDDING_CACHE_TTL', '0'))

# =============================================================================
# Vector index
# =============================================================================
# "pgvector" (requires DATABASE_URL) or "memory"
VECTOR_INDEX_BACKEND = os.getenv('VECTOR_INDEX_BACKEND', 'pgvector')

# =============================================================================
# RAG pipeline
# =============================================================================
RAG_CHUNK_SIZE = int(os.getenv('RAG_CHUNK_SIZE', '512'))
RAG_CHUNK_OVERLAP = int(os.getenv('RAG_CHUNK_OVERLAP', '50'))
RAG_MIN_CHUNK_TOKENS = int(os.getenv('RAG_MIN_CHUNK_TOKENS', '0'))
RAG_RETRIEVAL_TOP_K = int(os.getenv('RAG_RETRIEVAL_TOP_K', '5'))
RAG_SIMILARITY_THRESHOLD = float(os.getenv('RAG_SIMILARITY_THRESHOLD', '0.5'))
RAG_MAX_PROMPT_TOKENS = int(os.getenv('RAG_MAX_PROMPT_TOKENS', '8000'))
RAG_MAX_HISTORY_TURNS = int(os.getenv('RAG_MAX_HISTORY_TURNS', '8'))
RAG_MAX_TURN_CHARS = int(os.getenv('RAG_MAX_TURN_CHARS', '500'))
RAG_TEMPERATURE = float(os.getenv('RAG_TEMPERATURE', '0.3'))
RAG_MAX_ANSWER_TOKENS = int(os.getenv('RAG_MAX_ANSWER_TOKENS', '512'))

# =============================================================================
# Logging
# =============================================================================
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {module} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': os.getenv('LOG_LEVEL', 'INFO'),
    },
    'loggers': {
        'apps.indexing': {
            'handlers': ['console'],
            'level': 'DEBUG',
            'propagate': False,
        },
        'apps.rag': {
            'handlers': ['console'],
            'level': 'DEBUG',
            'propagate': False,
        },
    },
}
