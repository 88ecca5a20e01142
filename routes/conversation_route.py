"""FastAPI routes for reading persisted conversations."""

from fastapi import APIRouter, HTTPException, Request

from controllers.conversation_controller import get_conversation

router = APIRouter(prefix="/conversations")


@router.get("/{username}/{conversation_id}")
async def get_conversation_route(request: Request, username: str, conversation_id: str):
	try:
		return await get_conversation(request, username, conversation_id)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))
