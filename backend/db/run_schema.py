"""
在未安装 psql 时，用 Python + asyncpg 执行知识库建表脚本。
用法（在 backend 目录下）:
  python -m db.run_schema
"""
import asyncio
import os
import sys

import asyncpg

from knowledge.config import get_settings

SCHEMA_FILES = ["schema_knowledge.sql"]


def split_statements(sql: str) -> list[str]:
    """去掉注释行和空行，按行尾分号拆成多条语句"""
    statements = []
    current = []
    for line in sql.splitlines():
        line = line.strip()
        if not line or line.startswith("--"):
            continue
        current.append(line)
        if line.endswith(";"):
            statements.append(" ".join(current))
            current = []
    if current:
        statements.append(" ".join(current))
    return statements


async def run_file(conn: asyncpg.Connection, filepath: str) -> None:
    with open(filepath, "r", encoding="utf-8") as f:
        statements = split_statements(f.read())
    for i, st in enumerate(statements):
        try:
            await conn.execute(st)
        except Exception as e:
            raise RuntimeError(f"执行第 {i+1} 条语句失败: {e}\n语句: {st[:200]}...") from e


async def main() -> None:
    s = get_settings()
    print(f"连接: {s.postgres_host}:{s.postgres_port}/{s.postgres_db} (用户: {s.postgres_user})")
    schema_dir = os.path.dirname(os.path.abspath(__file__))
    try:
        conn = await asyncpg.connect(s.postgres_dsn)
    except Exception as e:
        print(f"连接数据库失败: {e}")
        print("请确认: 1) Postgres 已启动  2) .env 中 POSTGRES_* 正确")
        sys.exit(1)
    try:
        for name in SCHEMA_FILES:
            path = os.path.join(schema_dir, name)
            print(f"执行: {name}")
            await run_file(conn, path)
        rows = await conn.fetch(
            "SELECT tablename FROM pg_tables WHERE schemaname = 'public' ORDER BY tablename"
        )
        tables = [r["tablename"] for r in rows]
        print(f"建表完成。当前数据库 [{s.postgres_db}] public 下表: {tables}")
    finally:
        await conn.close()


if __name__ == "__main__":
    asyncio.run(main())
