"""
Tests for the /api/contacts endpoints.

Tests cover:
- Create with phone normalization and validation (201 / 400)
- Duplicate phone rejection
- Get, update, delete (404 on unknown id)
- Contact profile with notes, threads, messages and stats
"""

from conftest import create_contact, post_inbound


class TestCreateContact:
    """Test POST /api/contacts."""

    def test_create_contact_success(self, client):
        """Test a valid contact is created with camelCase timestamps."""
        response = client.post(
            "/api/contacts",
            json={"name": "Ada Lovelace", "phone": "+14155550123", "channel": "whatsapp"},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["name"] == "Ada Lovelace"
        assert data["phone"] == "+14155550123"
        assert data["channel"] == "whatsapp"
        assert data["id"]
        assert data["createdAt"].endswith("Z")
        assert "updatedAt" in data

    def test_channel_defaults_to_sms(self, client):
        """Test channel is sms when omitted."""
        response = client.post("/api/contacts", json={"name": "Bob", "phone": "+14155550124"})

        assert response.status_code == 201
        assert response.json()["channel"] == "sms"

    def test_phone_is_normalized(self, client):
        """Test spaces, dashes and parentheses are stripped from the phone."""
        response = client.post("/api/contacts", json={"name": "Eve", "phone": "+1 (415) 555-0125"})

        assert response.status_code == 201
        assert response.json()["phone"] == "+14155550125"

    def test_invalid_phone_returns_400(self, client):
        """Test a phone that is not E.164-like is rejected with details."""
        response = client.post("/api/contacts", json={"name": "Eve", "phone": "0123"})

        assert response.status_code == 400
        data = response.json()
        assert data["error"] == "Invalid data"
        assert isinstance(data["details"], list)
        assert data["details"]

    def test_missing_name_returns_400(self, client):
        """Test the name is required."""
        response = client.post("/api/contacts", json={"phone": "+14155550123"})

        assert response.status_code == 400

    def test_invalid_channel_returns_400(self, client):
        """Test only sms and whatsapp are accepted."""
        response = client.post(
            "/api/contacts",
            json={"name": "Ada", "phone": "+14155550123", "channel": "email"},
        )

        assert response.status_code == 400

    def test_duplicate_phone_returns_400(self, client):
        """Test a second contact with the same number is rejected."""
        create_contact(client, phone="+14155550123")

        response = client.post("/api/contacts", json={"name": "Other", "phone": "+1 415 555 0123"})

        assert response.status_code == 400
        assert response.json()["error"] == "A contact with this phone number already exists"


class TestReadUpdateDeleteContact:
    """Test GET/PATCH/DELETE /api/contacts/{id}."""

    def test_list_contacts(self, client):
        """Test all contacts are listed."""
        create_contact(client, name="Ada", phone="+14155550123")
        create_contact(client, name="Bob", phone="+14155550124")

        response = client.get("/api/contacts")

        assert response.status_code == 200
        assert {c["name"] for c in response.json()} == {"Ada", "Bob"}

    def test_get_contact(self, client):
        """Test a contact is fetched by id."""
        contact = create_contact(client)

        response = client.get(f"/api/contacts/{contact['id']}")

        assert response.status_code == 200
        assert response.json()["phone"] == contact["phone"]

    def test_get_unknown_contact_returns_404(self, client):
        """Test an unknown id returns 404 with an error body."""
        response = client.get("/api/contacts/does-not-exist")

        assert response.status_code == 404
        assert response.json() == {"error": "Contact not found"}

    def test_update_contact(self, client):
        """Test name and channel can be changed; omitted fields are kept."""
        contact = create_contact(client, name="Ada", channel="sms")

        response = client.patch(f"/api/contacts/{contact['id']}", json={"channel": "whatsapp"})

        assert response.status_code == 200
        data = response.json()
        assert data["channel"] == "whatsapp"
        assert data["name"] == "Ada"

    def test_update_unknown_contact_returns_404(self, client):
        response = client.patch("/api/contacts/nope", json={"name": "X"})

        assert response.status_code == 404

    def test_delete_contact_removes_threads_and_messages(self, client):
        """Test deleting a contact removes its threads, messages and notes."""
        post_inbound(client, "+14155550123", "Hi", "SM1")
        contact = client.get("/api/contacts").json()[0]
        client.post("/api/notes", json={"contactId": contact["id"], "content": "VIP"})

        response = client.delete(f"/api/contacts/{contact['id']}")

        assert response.status_code == 200
        assert response.json()["id"] == contact["id"]
        assert client.get(f"/api/contacts/{contact['id']}").status_code == 404
        assert client.get("/api/threads/list").json() == []
        assert client.get("/api/analytics").json()["totalMessages"] == 0

    def test_delete_unknown_contact_returns_404(self, client):
        response = client.delete("/api/contacts/nope")

        assert response.status_code == 404


class TestContactProfile:
    """Test GET /api/contacts/{id}/profile."""

    def test_profile_of_new_contact(self, client):
        """Test a contact without messages has zeroed stats."""
        contact = create_contact(client)

        response = client.get(f"/api/contacts/{contact['id']}/profile")

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == contact["id"]
        assert data["notes"] == []
        assert data["threads"] == []
        assert data["messages"] == []
        assert data["stats"]["totalMessages"] == 0
        assert data["stats"]["lastMessageAt"] is None
        assert data["stats"]["avgResponseTimeMinutes"] == 0
        assert "fetchedAt" in data["_meta"]
        assert data["_meta"]["responseTimeMs"] >= 0

    def test_profile_includes_messages_newest_first(self, client, sender):
        """Test messages of all threads are returned newest first with stats."""
        post_inbound(client, "+14155550123", "Hello", "SM1")
        contact = client.get("/api/contacts").json()[0]
        client.post("/api/messages/send", json={"contactId": contact["id"], "body": "Hi back"})
        post_inbound(client, "whatsapp:+14155550123", "On WhatsApp", "SM2", to="whatsapp:+14155550199")
        client.post("/api/notes", json={"contactId": contact["id"], "content": "Prefers mornings"})

        response = client.get(f"/api/contacts/{contact['id']}/profile")

        assert response.status_code == 200
        data = response.json()
        assert [m["body"] for m in data["messages"]] == ["On WhatsApp", "Hi back", "Hello"]
        assert len(data["threads"]) == 2
        assert [n["content"] for n in data["notes"]] == ["Prefers mornings"]

        stats = data["stats"]
        assert stats["totalMessages"] == 3
        assert stats["inboundCount"] == 2
        assert stats["outboundCount"] == 1
        assert stats["threadCount"] == 2
        assert stats["channels"] == ["sms", "whatsapp"]
        assert stats["firstMessageAt"] == data["messages"][-1]["createdAt"]
        assert stats["lastMessageAt"] == data["messages"][0]["createdAt"]

    def test_profile_unknown_contact_returns_404(self, client):
        response = client.get("/api/contacts/nope/profile")

        assert response.status_code == 404
