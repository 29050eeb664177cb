import os

# Database Configuration
# Uses default credentials for local Docker Compose setup
DB_URL = os.getenv("DATABASE_URL", "postgres://user:password@db:5432/restaurant_db")

# Application Metadata
PROJECT_NAME = "Restaurant Ordering Service"
VERSION = "1.0.0"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Cache Configuration ("memory" for single instance / tests, "redis" for shared deployments)
CACHE_BACKEND = os.getenv("CACHE_BACKEND", "memory")
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
CACHE_MAX_ENTRIES = int(os.getenv("CACHE_MAX_ENTRIES", 0)) # 0 disables the LRU bound

# Cache TTLs (seconds)
MENU_CACHE_TTL = int(os.getenv("MENU_CACHE_TTL", 600))
INGREDIENTS_CACHE_TTL = int(os.getenv("INGREDIENTS_CACHE_TTL", 300))
ALERTS_CACHE_TTL = int(os.getenv("ALERTS_CACHE_TTL", 60))
DASHBOARD_CACHE_TTL = int(os.getenv("DASHBOARD_CACHE_TTL", 120))
ORDERS_CACHE_TTL = int(os.getenv("ORDERS_CACHE_TTL", 300))
ALERT_LIST_LIMIT = int(os.getenv("ALERT_LIST_LIMIT", 50))

# Order Transaction Configuration
ORDER_TX_TIMEOUT = float(os.getenv("ORDER_TX_TIMEOUT", 10))
ORDER_TX_ISOLATION = os.getenv("ORDER_TX_ISOLATION", "READ COMMITTED")
STOCK_POLICY = os.getenv("STOCK_POLICY", "guarded") # "guarded" or "allow_negative"
PRICE_SOURCE = os.getenv("PRICE_SOURCE", "cart") # "cart" or "catalog"

# Admin gate
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN")

# Suggestion provider (Gemini). Without a key every suggestion uses the deterministic fallback.
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
AI_TIMEOUT = float(os.getenv("AI_TIMEOUT", 15))
