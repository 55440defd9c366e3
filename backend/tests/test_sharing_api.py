def _auth(name):
    return {"Authorization": f"Bearer {name}"}


def _register(client, *names):
    for name in names:
        assert client.get("/users/me", headers=_auth(name)).status_code == 200


def _create(client, title="Shared note", content="hello", owner="alice"):
    response = client.post("/notes", json={"title": title, "content": content}, headers=_auth(owner))
    return response.json()["data"]


def _share(client, note_id, email, permission="read", owner="alice"):
    response = client.post(
        f"/notes/{note_id}/share",
        json={"email": email, "permission": permission},
        headers=_auth(owner),
    )
    assert response.status_code == 200, response.json()
    return response.json()["data"]


def test_share_accept_read_then_revoke(client):
    _register(client, "alice", "bob")
    note = _create(client)

    share = _share(client, note["id"], "bob@example.com", "read")
    assert share["shareId"]
    assert share["shareToken"]

    # Pending shares grant nothing
    assert client.get(f"/notes/{note['id']}", headers=_auth("bob")).status_code == 404
    pending = client.get("/notes/pending-shares", headers=_auth("bob")).json()["data"]
    assert [p["id"] for p in pending] == [note["id"]]
    assert pending[0]["shareToken"] == share["shareToken"]
    assert pending[0]["permission"] == "read"

    accepted = client.post(f"/notes/share/accept/{share['shareToken']}", headers=_auth("bob"))
    assert accepted.status_code == 200
    assert accepted.json()["message"] == "Note share accepted successfully"
    assert accepted.json()["data"]["permission"] == "read"

    fetched = client.get(f"/notes/{note['id']}", headers=_auth("bob"))
    assert fetched.status_code == 200
    assert fetched.json()["data"]["permission"] == "read"
    assert client.get("/notes/pending-shares", headers=_auth("bob")).json()["data"] == []

    denied = client.put(f"/notes/{note['id']}", json={"content": "bob was here"}, headers=_auth("bob"))
    assert denied.status_code == 404
    assert denied.json()["message"] == "You do not have permission to edit this note"

    revoked = client.post(f"/notes/share/{share['shareId']}/revoke", headers=_auth("alice"))
    assert revoked.status_code == 200
    assert revoked.json()["message"] == "Note share revoked successfully"
    assert client.get(f"/notes/{note['id']}", headers=_auth("bob")).status_code == 404


def test_edit_share_allows_updates(client):
    _register(client, "alice", "bob")
    note = _create(client, content="v1")
    share = _share(client, note["id"], "bob@example.com", "edit")
    client.post(f"/notes/share/accept/{share['shareToken']}", headers=_auth("bob"))

    response = client.put(f"/notes/{note['id']}", json={"content": "v2 by bob"}, headers=_auth("bob"))
    assert response.status_code == 200
    assert response.json()["data"]["version"] == 2
    assert response.json()["data"]["permission"] == "edit"

    owner_view = client.get(f"/notes/{note['id']}", headers=_auth("alice")).json()["data"]
    assert owner_view["content"] == "v2 by bob"


def test_accept_twice_is_invalid(client):
    _register(client, "alice", "bob")
    note = _create(client)
    share = _share(client, note["id"], "bob@example.com")

    assert client.post(f"/notes/share/accept/{share['shareToken']}", headers=_auth("bob")).status_code == 200
    again = client.post(f"/notes/share/accept/{share['shareToken']}", headers=_auth("bob"))
    assert again.status_code == 400
    assert again.json()["message"] == "This share has already been accepted"


def test_accept_after_revoke_is_invalid(client):
    _register(client, "alice", "bob")
    note = _create(client)
    share = _share(client, note["id"], "bob@example.com")

    client.post(f"/notes/share/{share['shareId']}/revoke", headers=_auth("alice"))
    response = client.post(f"/notes/share/accept/{share['shareToken']}", headers=_auth("bob"))
    assert response.status_code == 400
    assert response.json()["message"] == "This share has been revoked"


def test_accept_with_unknown_token(client):
    _register(client, "bob")
    response = client.post("/notes/share/accept/not-a-token", headers=_auth("bob"))
    assert response.status_code == 404
    assert response.json()["message"] == "Invalid share token"


def test_share_meant_for_someone_else(client):
    _register(client, "alice", "bob", "carol")
    note = _create(client)
    share = _share(client, note["id"], "bob@example.com")

    response = client.post(f"/notes/share/accept/{share['shareToken']}", headers=_auth("carol"))
    assert response.status_code == 404
    assert response.json()["message"] == "This share was not intended for you"


def test_share_with_unregistered_email_binds_on_accept(client):
    _register(client, "alice")
    note = _create(client)
    share = _share(client, note["id"], "Dave@Example.com")

    # dave registers after the share was created
    pending = client.get("/notes/pending-shares", headers=_auth("dave")).json()["data"]
    assert [p["shareId"] for p in pending] == [share["shareId"]]

    accepted = client.post(f"/notes/share/accept/{share['shareToken']}", headers=_auth("dave"))
    assert accepted.status_code == 200
    assert client.get(f"/notes/{note['id']}", headers=_auth("dave")).status_code == 200

    shared = client.get("/notes/shared", headers=_auth("dave")).json()["data"]
    assert [n["id"] for n in shared] == [note["id"]]


def test_decline_share(client):
    _register(client, "alice", "bob")
    note = _create(client)
    share = _share(client, note["id"], "bob@example.com")

    declined = client.post(f"/notes/share/decline/{share['shareToken']}", headers=_auth("bob"))
    assert declined.status_code == 200
    assert declined.json()["message"] == "Note share declined successfully"

    assert client.get("/notes/pending-shares", headers=_auth("bob")).json()["data"] == []
    accept = client.post(f"/notes/share/accept/{share['shareToken']}", headers=_auth("bob"))
    assert accept.status_code == 400
    assert client.get(f"/notes/{note['id']}", headers=_auth("bob")).status_code == 404


def test_decline_after_accept_is_invalid(client):
    _register(client, "alice", "bob")
    note = _create(client)
    share = _share(client, note["id"], "bob@example.com")
    client.post(f"/notes/share/accept/{share['shareToken']}", headers=_auth("bob"))

    response = client.post(f"/notes/share/decline/{share['shareToken']}", headers=_auth("bob"))
    assert response.status_code == 400
    assert response.json()["message"] == "This share has already been accepted and cannot be declined"
    assert client.get(f"/notes/{note['id']}", headers=_auth("bob")).status_code == 200


def test_only_owner_can_share(client):
    _register(client, "alice", "bob", "carol")
    note = _create(client)
    share = _share(client, note["id"], "bob@example.com", "edit")
    client.post(f"/notes/share/accept/{share['shareToken']}", headers=_auth("bob"))

    response = client.post(
        f"/notes/{note['id']}/share", json={"email": "carol@example.com"}, headers=_auth("bob")
    )
    assert response.status_code == 404
    assert response.json()["message"] == "Only the owner can share this note"


def test_share_rejects_invalid_email(client):
    note = _create(client)
    response = client.post(f"/notes/{note['id']}/share", json={"email": "nobody"}, headers=_auth("alice"))
    assert response.status_code == 400
    assert response.json()["message"] == "Validation failed"


def test_only_owner_can_revoke(client):
    _register(client, "alice", "bob")
    note = _create(client)
    share = _share(client, note["id"], "bob@example.com", "edit")
    client.post(f"/notes/share/accept/{share['shareToken']}", headers=_auth("bob"))

    response = client.post(f"/notes/share/{share['shareId']}/revoke", headers=_auth("bob"))
    assert response.status_code == 404
    assert response.json()["message"] == "Only the owner can revoke shares"


def test_revoke_unknown_share(client):
    _register(client, "alice")
    response = client.post("/notes/share/missing/revoke", headers=_auth("alice"))
    assert response.status_code == 404
    assert response.json()["message"] == "Share not found"


def test_revoke_twice_is_harmless(client):
    _register(client, "alice", "bob")
    note = _create(client)
    share = _share(client, note["id"], "bob@example.com")

    assert client.post(f"/notes/share/{share['shareId']}/revoke", headers=_auth("alice")).status_code == 200
    assert client.post(f"/notes/share/{share['shareId']}/revoke", headers=_auth("alice")).status_code == 200


def test_shared_by_me_lists_live_shares(client):
    _register(client, "alice", "bob", "carol")
    note = _create(client)
    _create(client, "Not shared")
    to_bob = _share(client, note["id"], "bob@example.com", "edit")
    to_carol = _share(client, note["id"], "carol@example.com")
    client.post(f"/notes/share/accept/{to_bob['shareToken']}", headers=_auth("bob"))
    client.post(f"/notes/share/{to_carol['shareId']}/revoke", headers=_auth("alice"))

    response = client.get("/notes/shared-by-me", headers=_auth("alice"))
    assert response.status_code == 200
    data = response.json()["data"]
    assert [n["id"] for n in data] == [note["id"]]
    shares = data[0]["shares"]
    assert [s["id"] for s in shares] == [to_bob["shareId"]]
    assert shares[0]["state"] == "accepted"
    assert shares[0]["permission"] == "edit"
    assert shares[0]["recipientEmail"] == "bob@example.com"


def test_shared_with_me_prefers_edit(client):
    _register(client, "alice", "bob")
    note = _create(client)
    read = _share(client, note["id"], "bob@example.com", "read")
    edit = _share(client, note["id"], "bob@example.com", "edit")
    client.post(f"/notes/share/accept/{read['shareToken']}", headers=_auth("bob"))
    client.post(f"/notes/share/accept/{edit['shareToken']}", headers=_auth("bob"))

    shared = client.get("/notes/shared", headers=_auth("bob")).json()["data"]
    assert len(shared) == 1
    assert shared[0]["permission"] == "edit"
    assert client.get(f"/notes/{note['id']}", headers=_auth("bob")).json()["data"]["permission"] == "edit"


def test_search_includes_shared_notes(client):
    _register(client, "alice", "bob")
    note = _create(client, "Team plan", "quarterly goals")
    _create(client, "Bob's own goals", owner="bob")
    share = _share(client, note["id"], "bob@example.com")
    client.post(f"/notes/share/accept/{share['shareToken']}", headers=_auth("bob"))

    results = client.get("/notes/search", params={"q": "goals"}, headers=_auth("bob")).json()["data"]
    assert {n["title"] for n in results} == {"Team plan", "Bob's own goals"}
    by_title = {n["title"]: n for n in results}
    assert by_title["Team plan"]["permission"] == "read"
    assert by_title["Bob's own goals"]["permission"] == "edit"


def test_email_share_cannot_be_redeemed_by_other_account(client):
    _register(client, "alice", "carol")
    note = _create(client)
    share = _share(client, note["id"], "dave@example.com")

    accept = client.post(f"/notes/share/accept/{share['shareToken']}", headers=_auth("carol"))
    assert accept.status_code == 404
    assert accept.json()["message"] == "This share was not intended for you"

    decline = client.post(f"/notes/share/decline/{share['shareToken']}", headers=_auth("carol"))
    assert decline.status_code == 404
    assert decline.json()["message"] == "This share was not intended for you"

    # Still waiting for the invited address
    pending = client.get("/notes/pending-shares", headers=_auth("dave")).json()["data"]
    assert [p["shareId"] for p in pending] == [share["shareId"]]
    assert client.get(f"/notes/{note['id']}", headers=_auth("carol")).status_code == 404


def test_role_tells_owner_from_editor(client):
    _register(client, "alice", "bob")
    note = _create(client)
    share = _share(client, note["id"], "bob@example.com", "edit")
    accepted = client.post(f"/notes/share/accept/{share['shareToken']}", headers=_auth("bob")).json()["data"]
    assert accepted["role"] == "shared"

    as_bob = client.get(f"/notes/{note['id']}", headers=_auth("bob")).json()["data"]
    as_alice = client.get(f"/notes/{note['id']}", headers=_auth("alice")).json()["data"]
    assert (as_bob["permission"], as_bob["role"]) == ("edit", "shared")
    assert (as_alice["permission"], as_alice["role"]) == ("edit", "owner")

    shared = client.get("/notes/shared", headers=_auth("bob")).json()["data"]
    assert [n["role"] for n in shared] == ["shared"]
    by_me = client.get("/notes/shared-by-me", headers=_auth("alice")).json()["data"]
    assert [n["role"] for n in by_me] == ["owner"]
