"""
后端服务器启动脚本

启动 uvicorn 服务器运行 FastAPI 应用。
"""

import argparse
import sys
from pathlib import Path

BASE_DIR = Path(__file__).parent


def main():
    """启动服务器"""
    parser = argparse.ArgumentParser(description="Lorekeeper 知识抽取服务")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8123)
    parser.add_argument("--reload", action="store_true", help="开发模式下自动重载")
    args = parser.parse_args()

    if str(BASE_DIR) not in sys.path:
        sys.path.insert(0, str(BASE_DIR))

    import uvicorn
    from lorekeeper.core.config import settings

    print("=" * 60)
    print("Lorekeeper 知识抽取服务启动中...")
    print(f"数据存储: {settings.storage_dir}")
    print("=" * 60)

    uvicorn.run(
        "lorekeeper.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
        access_log=True,
    )


if __name__ == "__main__":
    main()
