"""Backend client adapters: SQL over HTTP (aiohttp) and SQL over the PostgreSQL wire protocol (psycopg)."""
