import asyncio

from festgate.config import DATABASE_URL
from festgate.infra.sql import make_database
from festgate.model.store import RegistrationStore


async def init_db(database_url: str = DATABASE_URL) -> None:
    db = make_database(database_url)
    try:
        store = RegistrationStore(db)
        await store.create_schema()
        print('✅ schema created')
        for s in await store.all_settings():
            print(f"   - {s['key']} = {s['value']}")
        print('✅ default settings seeded')
    finally:
        await db.dispose()


if __name__ == '__main__':
    asyncio.run(init_db())
