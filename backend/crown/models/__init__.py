# Models module
from crown.models.linked_account import LinkedAccount
from crown.models.submission import VideoSubmission, StoredMedia

__all__ = ["LinkedAccount", "VideoSubmission", "StoredMedia"]
