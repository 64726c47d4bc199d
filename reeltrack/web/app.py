"""FastAPI web application."""

import logging
import threading
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from reeltrack.config import Config
from reeltrack.content.aggregator import ContentAggregator
from reeltrack.content.tmdb import TMDBClient, entry_from_details
from reeltrack.errors import (
    AuthError,
    NotFoundError,
    OperationInProgressError,
    PersistenceError,
    QueryServiceError,
    ReelTrackError,
    ValidationError,
)
from reeltrack.models import BrowseFilters, check_kind
from reeltrack.social.friends import FriendsService
from reeltrack.store.auth import AuthService
from reeltrack.store.database import Database
from reeltrack.watchlist.activity import recent_activity
from reeltrack.watchlist.manager import WatchlistManager
from reeltrack.watchlist.stats import profile_stats

logger = logging.getLogger(__name__)

# Aggregators kept for load-more, least recently used dropped first
MAX_BROWSERS = 256

ERROR_STATUS = {
    AuthError: 401,
    NotFoundError: 404,
    ValidationError: 400,
    OperationInProgressError: 409,
    PersistenceError: 503,
    QueryServiceError: 502,
}


# Pydantic models for API
class SignUpRequest(BaseModel):
    email: str
    password: str
    username: str


class SignInRequest(BaseModel):
    email: str
    password: str


class MoveRequest(BaseModel):
    list: str


class RatingUpdate(BaseModel):
    rating: Optional[float | str] = None


class StepRequest(BaseModel):
    direction: int


class PasswordChange(BaseModel):
    current_password: str
    new_password: str


class EmailChange(BaseModel):
    password: str
    new_email: str


class FriendRequestCreate(BaseModel):
    receiver_id: str


class Services:
    """Everything a request handler needs, built once per app."""

    def __init__(self, database: Database, tmdb, max_browsers: int = MAX_BROWSERS):
        self.db = database
        self.tmdb = tmdb
        self.auth = AuthService(database)
        self.friends = FriendsService(database)
        self.max_browsers = max_browsers
        self._guard = threading.Lock()
        self._managers: dict = {}
        self._browsers: OrderedDict[str, ContentAggregator] = OrderedDict()

    def user_for(self, token: str) -> dict:
        """The signed-in user; a dead token also drops its cached aggregator."""
        try:
            return self.auth.get_user(token)
        except AuthError:
            self.forget_session(token)
            raise

    def manager(self, user_id: str, kind: str) -> WatchlistManager:
        key = (user_id, check_kind(kind))
        with self._guard:
            if key not in self._managers:
                self._managers[key] = WatchlistManager(self.db, self.tmdb, user_id, kind)
            return self._managers[key]

    def browser(self, token: str) -> ContentAggregator:
        """One aggregator per session, so load-more continues that session's list."""
        with self._guard:
            if token in self._browsers:
                self._browsers.move_to_end(token)
                return self._browsers[token]
            browser = self._browsers[token] = ContentAggregator(
                self.tmdb,
                min_vote_count=Config.MIN_VOTE_COUNT,
                top_rated_min_votes=Config.TOP_RATED_MIN_VOTES,
            )
            while len(self._browsers) > self.max_browsers:
                self._browsers.popitem(last=False)
            return browser

    def forget_session(self, token: str) -> None:
        with self._guard:
            self._browsers.pop(token, None)


def create_app(database: Optional[Database] = None, tmdb=None) -> FastAPI:
    """Build the API. Tests inject a database and a fake TMDB client."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifecycle."""
        logger.info("Starting web application...")
        if not hasattr(app.state, "services"):
            app.state.services = Services(
                database or Database(Config.DATABASE_PATH),
                tmdb or TMDBClient(Config.TMDB_API_KEY, Config.REQUEST_TIMEOUT, Config.REQUEST_RETRIES),
            )
        yield
        logger.info("Web application stopped")

    app = FastAPI(
        title="ReelTrack",
        description="Track the movies and shows you watch",
        lifespan=lifespan,
    )
    if database is not None and tmdb is not None:
        app.state.services = Services(database, tmdb)

    @app.exception_handler(ReelTrackError)
    async def handle_tracker_error(request: Request, exc: ReelTrackError):
        status = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500)
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status, content={"detail": str(exc)})

    def services(request: Request) -> Services:
        return request.app.state.services

    def bearer_token(authorization: Optional[str] = Header(None)) -> str:
        if not authorization or not authorization.lower().startswith("bearer "):
            raise AuthError("Not signed in")
        return authorization[7:].strip()

    def current_user(token: str = Depends(bearer_token), svc: Services = Depends(services)) -> dict:
        return svc.user_for(token)

    # ============== Auth ==============

    @app.post("/api/auth/signup", status_code=201)
    def sign_up(body: SignUpRequest, svc: Services = Depends(services)):
        return svc.auth.sign_up(body.email, body.password, body.username)

    @app.post("/api/auth/signin")
    def sign_in(body: SignInRequest, svc: Services = Depends(services)):
        return svc.auth.sign_in_with_password(body.email, body.password).to_dict()

    @app.post("/api/auth/signout")
    def sign_out(token: str = Depends(bearer_token), svc: Services = Depends(services)):
        svc.auth.sign_out(token)
        svc.forget_session(token)
        return {"status": "signed_out"}

    @app.get("/api/auth/user")
    def get_user(user: dict = Depends(current_user)):
        return user

    @app.post("/api/auth/password")
    def change_password(body: PasswordChange, token: str = Depends(bearer_token), svc: Services = Depends(services)):
        svc.user_for(token)
        svc.auth.update_password(token, body.current_password, body.new_password)
        return {"status": "password_updated"}

    @app.post("/api/auth/email")
    def change_email(body: EmailChange, token: str = Depends(bearer_token), svc: Services = Depends(services)):
        svc.user_for(token)
        return svc.auth.update_email(token, body.password, body.new_email)

    # ============== Browse ==============

    @app.get("/api/browse/search")
    def search(
        q: str = Query(...),
        content_type: str = Query("any"),
        genre: Optional[int] = Query(None),
        year: Optional[int] = Query(None),
        token: str = Depends(bearer_token),
        svc: Services = Depends(services),
    ):
        svc.user_for(token)
        filters = BrowseFilters(genre=genre, year=year, region=Config.WATCH_REGION)
        return svc.browser(token).search(q, content_type, filters).to_dict()

    @app.get("/api/browse/discover")
    def discover(
        content_type: str = Query("any"),
        genre: Optional[int] = Query(None),
        year: Optional[int] = Query(None),
        provider: Optional[int] = Query(None),
        sort: str = Query("popularity.desc"),
        token: str = Depends(bearer_token),
        svc: Services = Depends(services),
    ):
        svc.user_for(token)
        filters = BrowseFilters(
            content_type=content_type,
            genre=genre,
            year=year,
            provider=provider,
            sort=sort,
            region=Config.WATCH_REGION,
        )
        return svc.browser(token).discover(filters).to_dict()

    @app.post("/api/browse/more")
    def load_more(token: str = Depends(bearer_token), svc: Services = Depends(services)):
        svc.user_for(token)
        return svc.browser(token).load_more().to_dict()

    @app.get("/api/genres")
    def genres(svc: Services = Depends(services)):
        return ContentAggregator(svc.tmdb).genres()

    @app.get("/api/titles/{kind}/{media_id}")
    def title_details(kind: str, media_id: int, svc: Services = Depends(services)):
        check_kind_or_400(kind)
        return ContentAggregator(svc.tmdb).title_details(kind, media_id, Config.WATCH_REGION)

    # ============== Watchlists ==============

    @app.get("/api/watchlist/{kind}")
    def get_watchlist(kind: str, user: dict = Depends(current_user), svc: Services = Depends(services)):
        check_kind_or_400(kind)
        return svc.manager(user["id"], kind).refresh().to_dict()

    @app.get("/api/watchlist/{kind}/{media_id}/status")
    def watchlist_status(
        kind: str, media_id: int, user: dict = Depends(current_user), svc: Services = Depends(services)
    ):
        check_kind_or_400(kind)
        return {"list": svc.manager(user["id"], kind).list_status(media_id)}

    @app.post("/api/watchlist/{kind}/{media_id}")
    def move_to_list(
        kind: str,
        media_id: int,
        body: MoveRequest,
        user: dict = Depends(current_user),
        svc: Services = Depends(services),
    ):
        check_kind_or_400(kind)
        entry = entry_from_details(svc.tmdb.get_details(kind, media_id), kind)
        manager = svc.manager(user["id"], kind)
        previous = manager.move_to_list(entry, body.list)
        return {"previous_list": previous, "watchlist": manager.get_document().to_dict()}

    @app.delete("/api/watchlist/{kind}/{list_name}/{media_id}")
    def remove_from_list(
        kind: str,
        list_name: str,
        media_id: int,
        user: dict = Depends(current_user),
        svc: Services = Depends(services),
    ):
        check_kind_or_400(kind)
        manager = svc.manager(user["id"], kind)
        manager.remove_from_list(media_id, list_name)
        return manager.get_document().to_dict()

    @app.patch("/api/watchlist/{kind}/{list_name}/{media_id}/rating")
    def update_rating(
        kind: str,
        list_name: str,
        media_id: int,
        body: RatingUpdate,
        user: dict = Depends(current_user),
        svc: Services = Depends(services),
    ):
        check_kind_or_400(kind)
        manager = svc.manager(user["id"], kind)
        manager.update_rating(media_id, list_name, body.rating)
        return manager.get_document().to_dict()

    @app.post("/api/watchlist/tv/{list_name}/{media_id}/step")
    def step_episode(
        list_name: str,
        media_id: int,
        body: StepRequest,
        user: dict = Depends(current_user),
        svc: Services = Depends(services),
    ):
        result = svc.manager(user["id"], "tv").step_episode(media_id, list_name, body.direction)
        return {
            "new_season": result.new_season,
            "new_episode": result.new_episode,
            "completed": result.completed,
        }

    # ============== Profiles & feed ==============

    @app.get("/api/users/{username}")
    def profile(username: str, user: dict = Depends(current_user), svc: Services = Depends(services)):
        target = svc.db.get_user_by_username(username)
        if not target:
            raise NotFoundError("User not found")
        target.pop("email", None)
        return {
            "user": target,
            "is_own_profile": target["id"] == user["id"],
            "stats": profile_stats(svc.db, target["id"]),
            "activity": [
                a.to_dict() for a in recent_activity(svc.db, [target["id"]], Config.ACTIVITY_FEED_LIMIT)
            ],
        }

    @app.get("/api/feed")
    def feed(user: dict = Depends(current_user), svc: Services = Depends(services)):
        user_ids = [user["id"], *user["friends"]]
        return [a.to_dict() for a in recent_activity(svc.db, user_ids, Config.ACTIVITY_FEED_LIMIT)]

    # ============== Friends ==============

    @app.get("/api/friends")
    def list_friends(user: dict = Depends(current_user), svc: Services = Depends(services)):
        return svc.friends.list_friends(user["id"])

    @app.get("/api/friends/search")
    def search_users(q: str = Query(""), user: dict = Depends(current_user), svc: Services = Depends(services)):
        return svc.friends.search_users(user["id"], q)

    @app.get("/api/friends/requests")
    def friend_requests(user: dict = Depends(current_user), svc: Services = Depends(services)):
        return {
            "incoming": [r.to_dict() for r in svc.friends.incoming_requests(user["id"])],
            "outgoing": [r.to_dict() for r in svc.friends.outgoing_requests(user["id"])],
        }

    @app.post("/api/friends/requests", status_code=201)
    def send_friend_request(
        body: FriendRequestCreate, user: dict = Depends(current_user), svc: Services = Depends(services)
    ):
        return svc.friends.send_request(user["id"], body.receiver_id).to_dict()

    @app.post("/api/friends/requests/{request_id}/accept")
    def accept_friend_request(
        request_id: int, user: dict = Depends(current_user), svc: Services = Depends(services)
    ):
        return svc.friends.respond(request_id, user["id"], accept=True).to_dict()

    @app.post("/api/friends/requests/{request_id}/decline")
    def decline_friend_request(
        request_id: int, user: dict = Depends(current_user), svc: Services = Depends(services)
    ):
        return svc.friends.respond(request_id, user["id"], accept=False).to_dict()

    @app.delete("/api/friends/{friend_id}")
    def remove_friend(friend_id: str, user: dict = Depends(current_user), svc: Services = Depends(services)):
        svc.friends.remove_friend(user["id"], friend_id)
        return {"status": "removed"}

    return app


def check_kind_or_400(kind: str) -> None:
    try:
        check_kind(kind)
    except ValueError as e:
        raise ValidationError(str(e)) from e


app = create_app()
