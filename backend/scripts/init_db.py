"""CLI script to create the database tables and manage the demo account.
Usage: python scripts/init_db.py [--seed] [--list-users]
"""
import sys
import argparse
import pathlib
# Ensure `backend/` is on sys.path so `studyapp` imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from studyapp.config import settings
from studyapp.database import engine, create_db_and_tables
from studyapp import repositories, services


def main(seed: bool = False, list_users: bool = False):
    """Create tables, optionally seed the demo user and print the users.

    Output goes to stdout for a quick CLI feedback loop.
    """
    print(f'Using database: {settings.database_kind} ({settings.DATABASE_URL.split("@")[-1]})')
    create_db_and_tables()
    print('Tables ready.')
    with Session(engine) as session:
        if seed:
            user, created = services.seed_demo_user(session)
            state = 'created' if created else 'already present'
            print(f'Demo user {user.email} ({user.username}) {state}')
        if list_users:
            users = repositories.UserRepository(session).list_all()
            print(f'{len(users)} user(s)')
            for u in users:
                print(f'  #{u.id} {u.email} {u.username} level={u.level} xp={u.total_xp}')


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('--seed', action='store_true', help='Create the demo user if missing')
    parser.add_argument('--list-users', action='store_true', help='Print every registered user')
    args = parser.parse_args()
    main(seed=args.seed, list_users=args.list_users)
