from fastapi import APIRouter, Depends, Query

from paycore.api.deps import get_current_user_id, get_entitlement_resolver
from paycore.model.subscription import CreatorEntitlement, PostEntitlement, SubscriptionOut
from paycore.service.entitlement import EntitlementResolver, PostRef

router = APIRouter()


@router.get("/creators/{creator_id}", response_model=CreatorEntitlement)
async def creator_entitlement(
    creator_id: int,
    resolver: EntitlementResolver = Depends(get_entitlement_resolver),
    user_id: int = Depends(get_current_user_id),
):
    subscription = await resolver.active_subscription(user_id, creator_id)
    return CreatorEntitlement(
        creator_id=creator_id,
        has_access=subscription is not None,
        subscription=SubscriptionOut.model_validate(subscription) if subscription else None,
    )


@router.get("/posts/{post_id}", response_model=PostEntitlement)
async def post_entitlement(
    post_id: int,
    author_id: int = Query(..., description="Author of the post, as known to the content service"),
    resolver: EntitlementResolver = Depends(get_entitlement_resolver),
    user_id: int = Depends(get_current_user_id),
):
    unlocked = await resolver.has_unlocked_post(user_id, PostRef(id=post_id, author_id=author_id))
    return PostEntitlement(post_id=post_id, unlocked=unlocked)
