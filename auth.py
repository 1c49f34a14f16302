import asyncio
from fastapi import HTTPException, status
from passlib.context import CryptContext
from storage import SnapshotFile
from utils import now_ms

# The client sends sha256(sha256(password)); we store a bcrypt hash of that,
# so neither the password nor the client hash is kept on disk.
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

def hash_password(password_hash: str):
    return pwd_context.hash(password_hash)

def verify_password(password_hash: str, stored_hash: str):
    return pwd_context.verify(password_hash, stored_hash)


class AccountStore:
    """Nickname registry kept in accounts.json.

    Nicknames are unique case-insensitively. Every change re-reads and
    rewrites the whole file under a lock.
    """

    def __init__(self, snapshot: SnapshotFile):
        self.snapshot = snapshot
        self._lock = asyncio.Lock()

    async def register(self, nickname: str, password_hash: str) -> dict:
        key = nickname.lower()
        async with self._lock:
            accounts = await asyncio.to_thread(self.snapshot.load)
            if key in accounts:
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Nickname already taken")
            account = {
                "nickname": nickname,
                "password_hash": await asyncio.to_thread(hash_password, password_hash),
                "created_at": now_ms(),
            }
            accounts[key] = account
            await asyncio.to_thread(self.snapshot.save, accounts)
        return {"ok": True, "nickname": nickname, "created_at": account["created_at"]}

    async def login(self, nickname: str, password_hash: str) -> dict:
        accounts = await asyncio.to_thread(self.snapshot.load)
        account = accounts.get(nickname.lower())
        if not account:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Account not found")
        if not await asyncio.to_thread(verify_password, password_hash, account["password_hash"]):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
        return {"ok": True, "nickname": account["nickname"], "created_at": account["created_at"]}
