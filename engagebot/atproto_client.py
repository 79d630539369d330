"""ATproto client wrapper: mention source and reply sender for Bluesky."""

import asyncio
import logging
from datetime import datetime, timezone

from atproto import Client, models

from .config import BlueskyConfig
from .models import IncomingMention, Mention, SendResult

logger = logging.getLogger(__name__)

PROFILE_BATCH_SIZE = 25


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class BlueskyClient:
    """Wrapper around the ATproto client for mention ingestion and replies."""

    def __init__(self, config: BlueskyConfig, client: Client | None = None) -> None:
        self.config = config
        self.client = client or Client()
        self._logged_in = False

    def login(self) -> None:
        """Authenticate with Bluesky."""
        if self._logged_in:
            return

        logger.info("Logging in as %s", self.config.handle)
        self.client.login(
            self.config.handle,
            self.config.app_password.get_secret_value(),
        )
        self._logged_in = True
        logger.info("Successfully logged in")

    def get_follower_counts(self, dids: list[str]) -> dict[str, int]:
        """Follower counts for the given DIDs, fetched in batches."""
        counts: dict[str, int] = {}
        unique = list(dict.fromkeys(dids))
        for i in range(0, len(unique), PROFILE_BATCH_SIZE):
            batch = unique[i : i + PROFILE_BATCH_SIZE]
            try:
                response = self.client.app.bsky.actor.get_profiles(params={"actors": batch})
            except Exception as e:
                logger.warning("Could not fetch %d profile(s): %s", len(batch), e)
                continue
            for profile in response.profiles:
                counts[profile.did] = profile.followers_count or 0
        return counts

    def get_unread_mentions(self) -> list[IncomingMention]:
        """Fetch unread mention notifications.

        Returns:
            IncomingMention records, oldest first. Audience size is 0 when the
            author's profile could not be fetched.
        """
        self.login()

        notifications = []
        cursor = None

        while True:
            response = self.client.app.bsky.notification.list_notifications(
                params={"limit": 50, "cursor": cursor}
            )

            for notif in response.notifications:
                if notif.reason != "mention" or notif.is_read:
                    continue
                notifications.append(notif)

            cursor = response.cursor
            if not cursor:
                break

        followers = self.get_follower_counts([n.author.did for n in notifications])

        mentions: list[IncomingMention] = []
        for notif in notifications:
            root_uri = None
            root_cid = None
            if hasattr(notif.record, "reply") and notif.record.reply:
                root_uri = notif.record.reply.root.uri
                root_cid = notif.record.reply.root.cid

            mentions.append(
                IncomingMention(
                    platform_uri=notif.uri,
                    platform_cid=notif.cid,
                    root_uri=root_uri,
                    root_cid=root_cid,
                    author_did=notif.author.did,
                    author_handle=notif.author.handle,
                    author_display_name=notif.author.display_name,
                    text=notif.record.text or "",
                    audience_size=followers.get(notif.author.did, 0),
                    posted_at=_parse_timestamp(notif.indexed_at),
                )
            )

        mentions.sort(key=lambda m: m.posted_at or datetime.min.replace(tzinfo=timezone.utc))
        return mentions

    def mark_notifications_read(self) -> None:
        """Mark all notifications as read."""
        self.login()
        self.client.app.bsky.notification.update_seen(
            data={"seen_at": datetime.now(timezone.utc).isoformat()}
        )

    def reply_to_post(
        self,
        text: str,
        reply_to_uri: str,
        reply_to_cid: str,
        root_uri: str | None = None,
        root_cid: str | None = None,
    ) -> str:
        """Post a reply.

        Args:
            text: The reply text.
            reply_to_uri: URI of the post being replied to.
            reply_to_cid: CID of the post being replied to.
            root_uri: URI of the thread root (defaults to reply_to_uri).
            root_cid: CID of the thread root (defaults to reply_to_cid).

        Returns:
            URI of the created post.
        """
        self.login()

        # If no root specified, the reply target is the root
        if root_uri is None or root_cid is None:
            root_uri = reply_to_uri
            root_cid = reply_to_cid

        reply_ref = models.AppBskyFeedPost.ReplyRef(
            root=models.ComAtprotoRepoStrongRef.Main(uri=root_uri, cid=root_cid),
            parent=models.ComAtprotoRepoStrongRef.Main(uri=reply_to_uri, cid=reply_to_cid),
        )

        response = self.client.send_post(text=text, reply_to=reply_ref)
        logger.info("Posted reply: %s", response.uri)
        return response.uri


class BlueskySender:
    """Sender that posts threaded replies through a BlueskyClient."""

    def __init__(self, client: BlueskyClient) -> None:
        self.client = client

    async def send(self, text: str, target: Mention) -> SendResult:
        if not target.platform_uri or not target.platform_cid:
            return SendResult(success=False, error="mention has no platform reference")
        try:
            reply_uri = await asyncio.to_thread(
                self.client.reply_to_post,
                text=text,
                reply_to_uri=target.platform_uri,
                reply_to_cid=target.platform_cid,
                root_uri=target.root_uri,
                root_cid=target.root_cid,
            )
        except Exception as e:
            logger.error("Failed to reply to %s: %s", target.platform_uri, e, exc_info=True)
            return SendResult(success=False, error=str(e))
        return SendResult(success=True, reply_id=reply_uri)
