"""
Reset a user's password from the command line and unlock the account.

Usage: python reset_password.py <email> <new_password>
"""
import asyncio
import sys

from sqlalchemy import select

from qrvault.database import AsyncSessionLocal, User, init_db, utcnow
from qrvault.security import hash_password, password_problems


async def reset_password(email, new_password):
    await init_db()
    async with AsyncSessionLocal() as session:
        result = await session.execute(select(User).filter(User.email == email.strip().lower()))
        user = result.scalar_one_or_none()
        if not user:
            print(f"No user with email {email}")
            return False

        user.password_hash = hash_password(new_password)
        user.password_changed_at = utcnow()
        user.failed_logins = 0
        user.lockout_until = None
        if user.status == "locked":
            user.status = "active"
        await session.commit()

    print(f"Password for '{user.email}' updated successfully!")
    return True


if __name__ == "__main__":
    if len(sys.argv) < 3:
        print("Usage: python reset_password.py <email> <new_password>")
        sys.exit(1)

    email, new_pass = sys.argv[1], sys.argv[2]
    for problem in password_problems(new_pass):
        print(f"Warning: {problem}")
    ok = asyncio.run(reset_password(email, new_pass))
    sys.exit(0 if ok else 1)
