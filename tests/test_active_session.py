import pytest

from parley.client.completion import CompletionResult
from parley.errors import ErrorKind
from parley.sessions.active import KEY_SAVED_NOTE, ActiveSession, SendState
from parley.sessions.store import SessionStore


class CountingClient:
    def __init__(self, inner):
        self.inner = inner
        self.calls = 0

    def complete(self, *args, **kwargs):
        self.calls += 1
        return self.inner.complete(*args, **kwargs)


def test_create_new_ids_are_unique_and_seeded(active):
    ids = {active.id}
    for _ in range(20):
        session = active.create_new()
        assert session.id not in ids
        assert len(session.messages) == 1
        ids.add(session.id)
    assert len(active.store) == 21


def test_start_resumes_current_session(storage, make_active):
    first = make_active()
    first_id = first.id
    second = make_active()
    assert second.id == first_id


def test_activate_unknown_id_self_heals(active, storage):
    before = len(active.store)
    session = active.activate("ghost-id")

    assert session.id == "ghost-id"
    assert len(active.store) == before + 1
    stored = active.store.get("ghost-id")
    assert [m.role for m in stored.messages] == ["system"]
    assert active.store.current_id == "ghost-id"


def test_start_with_dangling_pointer_self_heals(storage, make_active):
    storage.write("current_chat_id", "dangling")
    active = make_active()
    assert active.id == "dangling"
    assert active.store.get("dangling") is not None


def test_full_exchange(storage, make_active, endpoint):
    active = make_active(start=False)
    active.create_new()
    endpoint.reply("4")

    result = active.append_user_message("What is 2+2?")

    assert result.ok
    stored = SessionStore(storage).get(active.id)
    assert [m.role for m in stored.messages] == ["system", "user", "assistant"]
    assert stored.messages[2].content == "4"
    assert stored.updated_at > stored.created_at
    assert stored.title == "What is 2+2?"
    assert active.state == SendState.IDLE
    assert active.last_outcome == SendState.SUCCEEDED


@pytest.mark.parametrize("text", ["", "   ", "\n\t"])
def test_blank_messages_are_rejected(active, client, text):
    counting = CountingClient(client)
    active.client = counting
    count = len(active.messages)

    assert active.append_user_message(text) is None
    assert len(active.messages) == count
    assert counting.calls == 0
    assert active.consume_error().kind == ErrorKind.VALIDATION_ERROR
    assert len(active.store.get(active.id).messages) == count


def test_send_while_sending_is_rejected(active, endpoint):
    pending = active.begin_send("first")
    count = len(active.messages)

    assert active.append_user_message("second") is None
    assert active.consume_error().kind == ErrorKind.VALIDATION_ERROR
    assert len(active.messages) == count
    assert endpoint.calls == 0

    active.finish_send(pending, CompletionResult.failure(ErrorKind.REQUEST_FAILED, "x"))
    assert not active.is_sending


def test_title_set_once(active, endpoint):
    long_text = "Tell me everything about the history of the Roman empire"
    active.append_user_message(long_text)
    assert active.title == long_text[:30] + "..."

    active.append_user_message("short follow-up")
    assert active.title == long_text[:30] + "..."
    assert active.store.get(active.id).title == long_text[:30] + "..."


def test_missing_credential_opens_gate(make_active, endpoint):
    active = make_active(api_key="")
    assert active.credential_required

    result = active.append_user_message("hello")

    assert result.error.kind == ErrorKind.MISSING_CREDENTIAL
    assert endpoint.calls == 0
    assert active.messages[-1].role == "system"
    assert active.messages[-1].content.startswith("Error: ")
    assert active.credential_required


def test_unauthorized_appends_error_and_reopens_gate(active, endpoint):
    active.update_config(model="sonar-small-online")
    assert not active.credential_required
    endpoint.status_code = 401
    endpoint.body = {"error": {"message": "bad key"}}

    result = active.append_user_message("hello")

    assert result.error.kind == ErrorKind.INVALID_CREDENTIAL
    assert endpoint.last_payload()["model"] == "sonar-small-online"
    assert [m.role for m in active.messages] == ["system", "user", "system"]
    assert active.credential_required
    error = active.consume_error()
    assert error.kind == ErrorKind.INVALID_CREDENTIAL
    assert active.consume_error() is None


def test_update_api_key_closes_gate(make_active):
    active = make_active(api_key="")
    active.update_config(api_key="  pplx-new  ")
    assert active.config.api_key == "pplx-new"
    assert not active.credential_required
    assert active.messages[-1].role == "system"
    assert active.messages[-1].content == KEY_SAVED_NOTE
    assert active.store.get(active.id).messages[-1].content == KEY_SAVED_NOTE


def test_other_config_changes_add_no_note(active):
    count = len(active.messages)
    active.update_config(model="small", system_prompt="Be terse.")
    assert len(active.messages) == count


def test_delete_active_of_two_sessions(active):
    other_id = active.id
    current = active.create_new()

    active.delete(current.id)

    ids = {s.id for s in active.store.list()}
    assert len(ids) == 2
    assert other_id in ids
    assert current.id not in ids
    assert active.store.current_id == active.id
    assert active.id not in (other_id, current.id)


def test_delete_inactive_session_keeps_active(active):
    other = active.id
    current = active.create_new().id
    assert active.delete(other) is True
    assert active.id == current
    assert active.store.get(other) is None


def test_retry_resends_without_new_user_message(active, endpoint):
    endpoint.status_code = 500
    endpoint.body = {"error": {"message": "overloaded"}}
    active.append_user_message("hello")
    assert active.consume_error().retryable
    assert active.can_retry()
    count = len(active.messages)

    endpoint.reply("hi there")
    result = active.retry()

    assert result.ok
    assert [m.role for m in active.messages[count:]] == ["assistant"]
    assert sum(1 for m in active.messages if m.role == "user") == 1
    assert [m["role"] for m in endpoint.last_payload()["messages"]] == ["system", "user"]


def test_retry_without_unanswered_message_is_rejected(active, endpoint):
    assert active.retry() is None
    assert active.consume_error().kind == ErrorKind.VALIDATION_ERROR
    assert endpoint.calls == 0


def test_pending_send_lands_in_origin_session(active, endpoint):
    origin = active.id
    pending = active.begin_send("question")
    active.create_new()

    endpoint.reply("answer")
    result = active.client.complete(
        pending.system_prompt, pending.model, pending.history, pending.api_key
    )
    active.finish_send(pending, result)

    stored = active.store.get(origin)
    assert [m.role for m in stored.messages] == ["system", "user", "assistant"]
    assert [m.role for m in active.messages] == ["system"]


def test_pending_send_restores_deleted_origin(active, endpoint):
    origin = active.id
    pending = active.begin_send("question")
    active.delete(origin)
    assert active.store.get(origin) is None

    endpoint.reply("answer")
    active.finish_send(pending, active.client.complete(
        pending.system_prompt, pending.model, pending.history, pending.api_key
    ))

    restored = active.store.get(origin)
    assert [m.content for m in restored.messages][-2:] == ["question", "answer"]


def test_storage_failure_keeps_in_memory_state(storage, active, endpoint):
    storage.fail_writes = True
    endpoint.reply("4")

    result = active.append_user_message("What is 2+2?")

    assert result.ok
    assert [m.role for m in active.messages] == ["system", "user", "system", "assistant", "system"]
    assert active.messages[2].content.startswith("Error: Could not save")
    error = active.consume_error()
    assert error.kind == ErrorKind.STORAGE_WRITE_FAILED
    assert error.appends_message
    assert [m["role"] for m in endpoint.last_payload()["messages"]] == ["system", "user"]

    storage.fail_writes = False
    active.append_user_message("again")
    stored = SessionStore(storage).get(active.id)
    assert [m.role for m in stored.messages] == [
        "system", "user", "system", "assistant", "system", "user", "assistant",
    ]


def test_storage_failure_note_is_not_repeated(storage, active):
    other = active.id
    active.create_new()
    storage.fail_writes = True

    assert active.delete(other) is False
    assert active.delete(other) is False

    notes = [m for m in active.messages if m.content.startswith("Error:")]
    assert len(notes) == 1
    assert active.consume_error().kind == ErrorKind.STORAGE_WRITE_FAILED


def test_sessions_projection_sorted(active):
    first = active.id
    second = active.create_new().id
    active.activate(first)
    active.append_user_message("bump")
    assert [s.id for s in active.sessions()][:2] == [first, second]


def test_requires_start(storage, client):
    active = ActiveSession(SessionStore(storage), client)
    with pytest.raises(RuntimeError):
        active.messages
