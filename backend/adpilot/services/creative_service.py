"""Creative asset upload and ad creative construction for launches."""

import logging
from dataclasses import dataclass

from adpilot.meta.client import GraphClient
from adpilot.meta.errors import UnknownMetaError

logger = logging.getLogger(__name__)


@dataclass
class CreativeSpec:
    name: str
    page_id: str
    link_url: str
    message: str | None = None
    headline: str | None = None
    description: str | None = None
    call_to_action: str = "LEARN_MORE"
    image_hash: str | None = None
    video_id: str | None = None


class CreativeService:
    def __init__(self, client: GraphClient):
        self.client = client

    async def upload_image(self, token: str, ad_account_id: str, image_url: str, principal: str | None = None) -> str:
        """Upload an image by public URL and return its hash."""
        logger.info("Uploading image to %s: %s", ad_account_id, image_url[:50])
        result = await self.client.post(f"{ad_account_id}/adimages", {"url": image_url}, token, principal)
        images = result.get("images") or {}
        image = next(iter(images.values()), None) if isinstance(images, dict) else None
        if not image or not image.get("hash"):
            raise UnknownMetaError("No image hash returned from Meta")
        return image["hash"]

    async def upload_video(self, token: str, ad_account_id: str, video_url: str, principal: str | None = None) -> str:
        """Start a server-to-server video upload (``file_url``) and return the video id."""
        logger.info("Uploading video to %s: %s", ad_account_id, video_url[:50])
        result = await self.client.post(
            f"{ad_account_id}/advideos",
            {"file_url": video_url, "description": "Uploaded via AdPilot"},
            token,
            principal,
        )
        if not result.get("id"):
            raise UnknownMetaError("No video ID returned from Meta")
        return result["id"]

    @staticmethod
    def build_object_story_spec(spec: CreativeSpec) -> dict:
        cta = {"type": spec.call_to_action or "LEARN_MORE", "value": {"link": spec.link_url}}
        if spec.video_id:
            return {
                "page_id": spec.page_id,
                "video_data": {
                    "call_to_action": cta,
                    "video_id": spec.video_id,
                    "message": spec.message,
                    "title": spec.headline,
                    "link_description": spec.description,
                },
            }
        if spec.image_hash:
            return {
                "page_id": spec.page_id,
                "link_data": {
                    "call_to_action": cta,
                    "link": spec.link_url,
                    "message": spec.message,
                    "name": spec.headline,
                    "description": spec.description,
                    "image_hash": spec.image_hash,
                },
            }
        raise ValueError("Creative requires either image_hash or video_id")

    async def create_ad_creative(
        self, token: str, ad_account_id: str, spec: CreativeSpec, principal: str | None = None,
    ) -> str:
        body = {
            "name": spec.name,
            "object_story_spec": self.build_object_story_spec(spec),
            "degrees_of_freedom_spec": {
                "creative_features_spec": {"standard_enhancements": {"enroll_status": "OPT_IN"}},
            },
        }
        logger.info("Creating ad creative %r (%s)", spec.name, "VIDEO" if spec.video_id else "IMAGE")
        result = await self.client.post(f"{ad_account_id}/adcreatives", body, token, principal)
        if not result.get("id"):
            raise UnknownMetaError("No creative ID returned from Meta")
        return result["id"]
