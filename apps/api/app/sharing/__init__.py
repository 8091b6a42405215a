from app.sharing.models import SharedEntityGrant

__all__ = ["SharedEntityGrant"]
