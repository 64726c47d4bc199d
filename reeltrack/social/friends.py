"""Friends, friend requests and user search."""

import logging

from reeltrack.errors import NotFoundError, ValidationError
from reeltrack.models import FriendRequest

logger = logging.getLogger(__name__)


class FriendsService:
    """Friend graph operations for signed-in users."""

    SEARCH_LIMIT = 10

    def __init__(self, database):
        self.db = database

    def _require_user(self, user_id: str) -> dict:
        user = self.db.get_user(user_id)
        if not user:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def list_friends(self, user_id: str) -> list[dict]:
        user = self._require_user(user_id)
        return self.db.get_users(user["friends"])

    def search_users(self, user_id: str, query: str) -> list[dict]:
        """
        Usernames matching query, minus the searcher, their friends and
        anyone they already sent a pending request to.
        """
        query = (query or "").strip()
        if not query:
            return []
        user = self._require_user(user_id)
        pending = [r.receiver_id for r in self.db.list_friend_requests(sender_id=user_id)]
        exclude = [user_id, *user["friends"], *pending]
        return self.db.search_users(query, exclude_ids=exclude, limit=self.SEARCH_LIMIT)

    def send_request(self, sender_id: str, receiver_id: str) -> FriendRequest:
        if sender_id == receiver_id:
            raise ValidationError("You cannot send a friend request to yourself")
        sender = self._require_user(sender_id)
        self._require_user(receiver_id)
        if receiver_id in sender["friends"]:
            raise ValidationError("You are already friends")
        if self.db.find_pending_request(sender_id, receiver_id):
            raise ValidationError("A friend request is already pending")

        request = self.db.create_friend_request(sender_id, receiver_id)
        logger.info(f"Friend request {request.id}: {sender_id} -> {receiver_id}")
        return request

    def incoming_requests(self, user_id: str) -> list[FriendRequest]:
        return self.db.list_friend_requests(receiver_id=user_id)

    def outgoing_requests(self, user_id: str) -> list[FriendRequest]:
        return self.db.list_friend_requests(sender_id=user_id)

    def respond(self, request_id: int, user_id: str, accept: bool) -> FriendRequest:
        """Accept (both friend lists updated together) or decline (request deleted)."""
        request = self.db.get_friend_request(request_id)
        if not request or request.receiver_id != user_id or request.status != "pending":
            raise NotFoundError(f"No pending friend request {request_id}")

        if accept:
            accepted = self.db.accept_friend_request(request_id, user_id)
            logger.info(f"{user_id} accepted friend request {request_id}")
            return accepted

        self.db.delete_friend_request(request_id)
        request.status = "declined"
        logger.info(f"{user_id} declined friend request {request_id}")
        return request

    def remove_friend(self, user_id: str, friend_id: str) -> None:
        user = self._require_user(user_id)
        if friend_id not in user["friends"]:
            raise NotFoundError(f"{friend_id} is not a friend of {user_id}")
        self.db.remove_friendship(user_id, friend_id)
