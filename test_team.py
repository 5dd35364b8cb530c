"""
Tests for the /api/team/members endpoints.
"""


class TestTeamMembers:
    """Test GET and POST /api/team/members."""

    def test_empty_list(self, client):
        response = client.get("/api/team/members")

        assert response.status_code == 200
        assert response.json() == []

    def test_create_member(self, client):
        response = client.post("/api/team/members", json={"name": "Sam", "email": "Sam@Example.com"})

        assert response.status_code == 201
        data = response.json()
        assert data["name"] == "Sam"
        assert data["email"] == "sam@example.com"
        assert data["id"]

    def test_members_ordered_by_name(self, client):
        """Test members are listed alphabetically for mention pickers."""
        for name in ("Zoe", "Ann", "Max"):
            client.post("/api/team/members", json={"name": name, "email": f"{name.lower()}@example.com"})

        response = client.get("/api/team/members")

        assert [m["name"] for m in response.json()] == ["Ann", "Max", "Zoe"]

    def test_duplicate_email_returns_409(self, client):
        """Test emails are unique regardless of case."""
        client.post("/api/team/members", json={"name": "Sam", "email": "sam@example.com"})

        response = client.post("/api/team/members", json={"name": "Samuel", "email": "SAM@example.com"})

        assert response.status_code == 409
        assert "error" in response.json()

    def test_invalid_email_returns_400(self, client):
        response = client.post("/api/team/members", json={"name": "Sam", "email": "not-an-email"})

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid data"
