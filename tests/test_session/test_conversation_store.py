import pytest

from deckhand.conversation import AssistantMessage, ConversationState, ToolUse, ToolUseResult
from deckhand.exceptions import StoreError
from deckhand.permissions import Agents
from deckhand.store import ConversationStore
from deckhand.tools import create_tool_registry


def make_conversation():
    conversation = ConversationState(Agents(), create_tool_registry(), model="qwen3-coder:30b")
    conversation.set_next_user_message("read the readme")
    conversation.push_assistant_message(
        AssistantMessage(tool_uses=[ToolUse(id="t1", name="fs_read", args={"path": "README.md"})]),
        None,
    )
    conversation.add_tool_results([ToolUseResult(tool_use_id="t1", content=["# Title"])])
    conversation.push_assistant_message(AssistantMessage(content="It is a title.", message_id="m2"), None)
    return conversation


@pytest.mark.asyncio
async def test_store_uses_db_path_override(tmp_path):
    db_path = tmp_path / "nested" / "conversations.db"
    store = ConversationStore(db_path=db_path)
    try:
        await store.save(tmp_path, make_conversation())
        assert db_path.exists()
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_save_and_load_round_trip_per_directory(tmp_path):
    store = ConversationStore(db_path=tmp_path / "conversations.db")
    project = tmp_path / "project"
    project.mkdir()
    try:
        original = make_conversation()
        await store.save(project, original)

        loaded = await store.load(project, Agents(), create_tool_registry())
        assert loaded is not None
        assert loaded.conversation_id == original.conversation_id
        assert loaded.model == "qwen3-coder:30b"
        assert len(loaded.history) == 2
        assert loaded.history[1].user.tool_results[0].content == ["# Title"]
        assert loaded.history[1].assistant.message_id == "m2"

        assert await store.load(tmp_path, Agents(), create_tool_registry()) is None
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_saving_again_replaces_previous_conversation(tmp_path):
    store = ConversationStore(db_path=tmp_path / "conversations.db")
    try:
        await store.save(tmp_path, make_conversation())
        replacement = make_conversation()
        replacement.clear()
        await store.save(tmp_path, replacement)

        loaded = await store.load(tmp_path, Agents(), create_tool_registry())
        assert loaded.conversation_id == replacement.conversation_id
        assert loaded.history == []
    finally:
        await store.close()


async def insert_row(store, cwd, data):
    db = await store._ensure_db()
    await db.execute(
        "INSERT INTO conversations (cwd, conversation_id, data, updated_at) VALUES (?, ?, ?, ?)",
        (str(cwd.resolve()), "c1", data, "now"),
    )
    await db.commit()


@pytest.mark.asyncio
async def test_wrongly_shaped_row_raises_store_error(tmp_path):
    store = ConversationStore(db_path=tmp_path / "conversations.db")
    try:
        await insert_row(store, tmp_path, '{"history": [{"user": {"tool_results": [{}]}}]}')

        with pytest.raises(StoreError, match="malformed"):
            await store.load(tmp_path, Agents(), create_tool_registry())
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_corrupt_row_raises_store_error(tmp_path):
    store = ConversationStore(db_path=tmp_path / "conversations.db")
    try:
        await insert_row(store, tmp_path, "{not json")

        with pytest.raises(StoreError, match="corrupt"):
            await store.load(tmp_path, Agents(), create_tool_registry())
    finally:
        await store.close()
