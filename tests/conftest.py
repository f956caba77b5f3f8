import os

# 在匯入 app 之前設定，避免連線到正式資料庫
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key-" + "x" * 32)
os.environ.setdefault("DEBUG", "false")
