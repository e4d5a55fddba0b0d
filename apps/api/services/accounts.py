"""User account helpers shared by the credit and storage layers."""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.user import User


async def ensure_user(db: AsyncSession, user_id: str, email: str = None) -> User:
    """Return the user row, creating a placeholder for first-time callers."""
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user:
        return user

    user = User(id=user_id, email=email or f"{user_id}@local.invalid")
    db.add(user)
    await db.flush()
    return user
