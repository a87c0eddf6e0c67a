"""
CRM: leads, activities, conversion, clients and contacts.
"""

import pytest

from edunexia.extensions import db
from edunexia.models import Lead, Client, Contact, LeadActivity, CheckoutLink, PermissionAudit
from edunexia.services import crm_service
from edunexia.services.audit_service import Actor
from edunexia.time_utils import utcnow
from edunexia.validation import ValidationError, ConflictError, NotFoundError


def _checkout_for(lead=None, client=None):
    link = CheckoutLink(
        lead_id=lead.id if lead else None,
        client_id=client.id if client else None,
        description="Mensalidade",
        value=100,
        due_date=utcnow().date(),
        status="active",
    )
    db.session.add(link)
    db.session.commit()
    return link


class TestLeads:

    def test_create_and_audit(self, db_session, institution):
        lead = crm_service.create_lead(
            {"name": "Maria Souza", "email": "maria@example.com", "institution_id": institution.id},
            actor=Actor(user_id=None),
        )
        assert lead.status == "new"
        entry = PermissionAudit.query.filter_by(entity_type="lead", entity_id=lead.id).one()
        assert entry.action_type == "create"
        assert entry.new_value["name"] == "Maria Souza"

    def test_name_required(self, db_session):
        with pytest.raises(ValidationError):
            crm_service.create_lead({"email": "x@example.com"})

    def test_unknown_field_rejected(self, db_session):
        with pytest.raises(ValidationError):
            crm_service.create_lead({"name": "X", "converted_to_client_id": 1})

    def test_converted_status_not_writable(self, db_session):
        lead = crm_service.create_lead({"name": "X"})
        with pytest.raises(ValidationError):
            crm_service.update_lead(lead.id, {"status": "converted"})

    def test_unknown_institution(self, db_session):
        with pytest.raises(NotFoundError):
            crm_service.create_lead({"name": "X", "institution_id": 4242})

    def test_filters_and_search(self, db_session):
        crm_service.create_lead({"name": "Ana", "source": "site", "company": "Escola Norte"})
        crm_service.create_lead({"name": "Bruno", "source": "indicacao", "status": "qualified"})

        assert crm_service.list_leads(source="site")["count"] == 1
        assert crm_service.list_leads(status="qualified")["items"][0]["name"] == "Bruno"
        assert crm_service.list_leads(search="norte")["items"][0]["name"] == "Ana"
        with pytest.raises(ValidationError):
            crm_service.list_leads(status="hot")

    def test_pagination(self, db_session):
        for i in range(5):
            crm_service.create_lead({"name": f"Lead {i}"})

        unpaged = crm_service.list_leads()
        assert unpaged["count"] == 5
        assert "pagination" not in unpaged

        page = crm_service.list_leads(page=2, per_page=2)
        assert page["count"] == 2
        assert page["pagination"]["total"] == 5
        assert page["pagination"]["total_pages"] == 3
        assert page["pagination"]["has_next"] is True
        assert page["pagination"]["has_prev"] is True

    def test_per_page_is_capped(self, db_session):
        page = crm_service.list_leads(page=1, per_page=1000)
        assert page["pagination"]["per_page"] == crm_service.MAX_PER_PAGE

    def test_delete_removes_activities(self, db_session):
        lead = crm_service.create_lead({"name": "X"})
        crm_service.add_lead_activity(lead.id, "note", "Called back")
        crm_service.delete_lead(lead.id)
        assert Lead.query.count() == 0
        assert LeadActivity.query.count() == 0

    def test_delete_with_checkout_links_conflicts(self, db_session):
        lead = crm_service.create_lead({"name": "X"})
        _checkout_for(lead=lead)
        with pytest.raises(ConflictError):
            crm_service.delete_lead(lead.id)


class TestActivities:

    def test_add_and_list(self, db_session):
        lead = crm_service.create_lead({"name": "X"})
        crm_service.add_lead_activity(lead.id, "note", "First")
        crm_service.add_lead_activity(lead.id, "email", "Second", metadata={"subject": "Oi"})
        activities = crm_service.list_lead_activities(lead.id)
        assert [a.description for a in activities] == ["Second", "First"]
        assert activities[0].details == {"subject": "Oi"}

    @pytest.mark.parametrize("kwargs", [
        {"type": "fax", "description": "x"},
        {"type": "note", "description": "   "},
        {"type": "note", "description": "x", "metadata": ["not", "a", "dict"]},
    ])
    def test_invalid_activity(self, db_session, kwargs):
        lead = crm_service.create_lead({"name": "X"})
        with pytest.raises(ValidationError):
            crm_service.add_lead_activity(lead.id, **kwargs)

    def test_missing_lead(self, db_session):
        with pytest.raises(NotFoundError):
            crm_service.add_lead_activity(999, "note", "x")


class TestConversion:

    def test_convert_copies_lead_fields(self, db_session, institution):
        lead = crm_service.create_lead({
            "name": "Colegio Sul", "email": "contato@sul.edu", "company": "Colegio Sul Ltda",
            "institution_id": institution.id,
        })
        client = crm_service.convert_lead_to_client(lead.id, {"document": "12.345.678/0001-90"})

        assert client.type == "pj"
        assert client.email == "contato@sul.edu"
        assert client.institution_id == institution.id
        assert lead.status == "converted"
        assert lead.converted_to_client_id == client.id

    def test_convert_twice_conflicts(self, db_session):
        lead = crm_service.create_lead({"name": "X"})
        crm_service.convert_lead_to_client(lead.id)
        with pytest.raises(ConflictError):
            crm_service.convert_lead_to_client(lead.id)

    def test_converted_lead_status_frozen(self, db_session):
        lead = crm_service.create_lead({"name": "X"})
        crm_service.convert_lead_to_client(lead.id)
        with pytest.raises(ConflictError):
            crm_service.update_lead(lead.id, {"status": "lost"})
        # Other fields stay editable
        crm_service.update_lead(lead.id, {"notes": "Signed"})

    def test_duplicate_document_blocks_conversion(self, db_session):
        crm_service.create_client({"name": "Existing", "document": "123.456.789-00"})
        lead = crm_service.create_lead({"name": "X"})
        with pytest.raises(ConflictError):
            crm_service.convert_lead_to_client(lead.id, {"document": "123.456.789-00"})
        assert crm_service.get_lead(lead.id).status == "new"


class TestClients:

    def test_document_is_unique(self, db_session):
        crm_service.create_client({"name": "A", "document": "111"})
        with pytest.raises(ConflictError):
            crm_service.create_client({"name": "B", "document": "111"})

        other = crm_service.create_client({"name": "C", "document": "222"})
        with pytest.raises(ConflictError):
            crm_service.update_client(other.id, {"document": "111"})
        # Re-saving its own document is fine
        crm_service.update_client(other.id, {"document": "222"})

    def test_invalid_type(self, db_session):
        with pytest.raises(ValidationError):
            crm_service.create_client({"name": "A", "type": "xx"})

    def test_filters(self, db_session):
        crm_service.create_client({"name": "Beta", "type": "pj"})
        crm_service.create_client({"name": "Alfa", "type": "pf", "is_active": False})

        assert [c["name"] for c in crm_service.list_clients()["items"]] == ["Alfa", "Beta"]
        assert crm_service.list_clients(type="pj")["count"] == 1
        assert crm_service.list_clients(is_active=True)["items"][0]["name"] == "Beta"

    def test_delete_cascades_contacts_and_unlinks_leads(self, db_session):
        lead = crm_service.create_lead({"name": "X"})
        client = crm_service.convert_lead_to_client(lead.id)
        crm_service.create_contact(client.id, {"name": "Joana"})

        crm_service.delete_client(client.id)
        db_session.expire_all()
        assert Client.query.count() == 0
        assert Contact.query.count() == 0
        assert db.session.get(Lead, lead.id).converted_to_client_id is None

    def test_delete_with_checkout_links_conflicts(self, db_session):
        client = crm_service.create_client({"name": "A"})
        _checkout_for(client=client)
        with pytest.raises(ConflictError):
            crm_service.delete_client(client.id)


class TestContacts:

    def test_single_primary(self, db_session):
        client = crm_service.create_client({"name": "A"})
        first = crm_service.create_contact(client.id, {"name": "One", "is_primary": True})
        second = crm_service.create_contact(client.id, {"name": "Two", "is_primary": True})
        assert first.is_primary is False
        assert second.is_primary is True

        crm_service.update_contact(client.id, first.id, {"is_primary": True})
        assert second.is_primary is False

    def test_contact_must_belong_to_client(self, db_session):
        a = crm_service.create_client({"name": "A"})
        b = crm_service.create_client({"name": "B"})
        contact = crm_service.create_contact(a.id, {"name": "One"})
        with pytest.raises(NotFoundError):
            crm_service.update_contact(b.id, contact.id, {"name": "Moved"})
        with pytest.raises(NotFoundError):
            crm_service.delete_contact(b.id, contact.id)

    def test_delete_contact(self, db_session):
        client = crm_service.create_client({"name": "A"})
        contact = crm_service.create_contact(client.id, {"name": "One"})
        crm_service.delete_contact(client.id, contact.id)
        assert crm_service.list_contacts(client.id) == []


# =============================================================================
# ROUTES
# =============================================================================


class TestLeadRoutes:

    def test_create_list_update(self, client, sales_headers, institution):
        resp = client.post(
            "/api/v2/leads", json={"name": "Carlos", "institution_id": institution.id}, headers=sales_headers
        )
        assert resp.status_code == 201
        lead_id = resp.get_json()["id"]

        resp = client.get("/api/v2/leads?page=1&per_page=10", headers=sales_headers)
        assert resp.status_code == 200
        assert resp.get_json()["pagination"]["total"] == 1

        resp = client.put(f"/api/v2/leads/{lead_id}", json={"status": "contacted"}, headers=sales_headers)
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "contacted"

    def test_create_in_foreign_institution_denied(self, client, sales_headers, other_institution):
        resp = client.post(
            "/api/v2/leads", json={"name": "X", "institution_id": other_institution.id}, headers=sales_headers
        )
        assert resp.status_code == 403

    def test_update_foreign_lead_denied(self, client, sales_headers, other_institution):
        lead = crm_service.create_lead({"name": "X", "institution_id": other_institution.id})
        resp = client.put(f"/api/v2/leads/{lead.id}", json={"notes": "x"}, headers=sales_headers)
        assert resp.status_code == 403

    def test_assigned_lead_in_foreign_institution_allowed(self, client, sales_headers, sales_user, other_institution):
        lead = crm_service.create_lead({
            "name": "X", "institution_id": other_institution.id, "assigned_to_id": sales_user.id,
        })
        resp = client.put(f"/api/v2/leads/{lead.id}", json={"notes": "x"}, headers=sales_headers)
        assert resp.status_code == 200

    def test_invalid_payload(self, client, sales_headers):
        assert client.post("/api/v2/leads", json={}, headers=sales_headers).status_code == 400
        assert client.get("/api/v2/leads?page=abc", headers=sales_headers).status_code == 400

    def test_missing_lead(self, client, sales_headers):
        assert client.get("/api/v2/leads/999", headers=sales_headers).status_code == 404

    def test_activities(self, client, sales_headers):
        lead = crm_service.create_lead({"name": "X"})
        resp = client.post(
            f"/api/v2/leads/{lead.id}/activities",
            json={"type": "contact", "description": "WhatsApp"},
            headers=sales_headers,
        )
        assert resp.status_code == 201
        resp = client.get(f"/api/v2/leads/{lead.id}/activities", headers=sales_headers)
        assert resp.get_json()["count"] == 1

    def test_convert(self, client, sales_headers, institution):
        lead = crm_service.create_lead({"name": "X", "institution_id": institution.id})
        resp = client.post(f"/api/v2/leads/{lead.id}/convert", json={"type": "pf"}, headers=sales_headers)
        assert resp.status_code == 201
        body = resp.get_json()
        assert body["lead"]["status"] == "converted"
        assert body["lead"]["converted_to_client_id"] == body["client"]["id"]

        resp = client.post(f"/api/v2/leads/{lead.id}/convert", headers=sales_headers)
        assert resp.status_code == 409

    def test_delete_needs_permission(self, client, sales_headers):
        lead = crm_service.create_lead({"name": "X"})
        assert client.delete(f"/api/v2/leads/{lead.id}", headers=sales_headers).status_code == 403

    def test_super_admin_delete_removes_activities(self, client, db_session, super_admin_headers):
        lead = crm_service.create_lead({"name": "X"})
        crm_service.add_lead_activity(lead.id, "note", "Called back")
        lead_id = lead.id
        db_session.expire_all()

        assert client.delete(f"/api/v2/leads/{lead_id}", headers=super_admin_headers).status_code == 200
        assert LeadActivity.query.filter_by(lead_id=lead_id).count() == 0

    @pytest.mark.parametrize("institution_id", [[1], {"id": 1}, "abc", True, 1.5])
    def test_malformed_institution_id(self, client, sales_headers, institution_id):
        resp = client.post(
            "/api/v2/leads", json={"name": "Ana", "institution_id": institution_id}, headers=sales_headers
        )
        assert resp.status_code == 400
        assert Lead.query.count() == 0

    def test_non_object_body(self, client, sales_headers):
        assert client.post("/api/v2/leads", json=[1, 2], headers=sales_headers).status_code == 400

    def test_super_admin_delete_conflict(self, client, super_admin_headers):
        lead = crm_service.create_lead({"name": "X"})
        _checkout_for(lead=lead)
        assert client.delete(f"/api/v2/leads/{lead.id}", headers=super_admin_headers).status_code == 409


class TestClientRoutes:

    def test_malformed_institution_id(self, client, sales_headers):
        resp = client.post("/api/crm/clients", json={"name": "A", "institution_id": [1]}, headers=sales_headers)
        assert resp.status_code == 400
        assert Client.query.count() == 0

    def test_delete_removes_contacts(self, client, db_session, super_admin_headers):
        created = crm_service.create_client({"name": "A"})
        crm_service.create_contact(created.id, {"name": "Joana"})
        client_id = created.id
        db_session.expire_all()

        assert client.delete(f"/api/crm/clients/{client_id}", headers=super_admin_headers).status_code == 200
        assert Contact.query.filter_by(client_id=client_id).count() == 0

    def test_client_crud(self, client, sales_headers, institution):
        resp = client.post(
            "/api/crm/clients",
            json={"name": "Escola Leste", "type": "pj", "document": "999", "institution_id": institution.id},
            headers=sales_headers,
        )
        assert resp.status_code == 201
        client_id = resp.get_json()["id"]

        resp = client.post("/api/crm/clients", json={"name": "Dup", "document": "999"}, headers=sales_headers)
        assert resp.status_code == 409

        resp = client.post(
            f"/api/crm/clients/{client_id}/contacts",
            json={"name": "Diretora", "is_primary": True},
            headers=sales_headers,
        )
        assert resp.status_code == 201

        resp = client.get(f"/api/crm/clients/{client_id}", headers=sales_headers)
        assert resp.status_code == 200
        assert resp.get_json()["contacts"][0]["name"] == "Diretora"

        resp = client.put(f"/api/crm/clients/{client_id}", json={"city": "Recife"}, headers=sales_headers)
        assert resp.status_code == 200
        assert resp.get_json()["city"] == "Recife"

    def test_client_delete(self, client, super_admin_headers):
        record = crm_service.create_client({"name": "A"})
        resp = client.delete(f"/api/crm/clients/{record.id}", headers=super_admin_headers)
        assert resp.status_code == 200
        assert client.get(f"/api/crm/clients/{record.id}", headers=super_admin_headers).status_code == 404

    def test_foreign_client_update_denied(self, client, sales_headers, other_institution):
        record = crm_service.create_client({"name": "A", "institution_id": other_institution.id})
        resp = client.put(f"/api/crm/clients/{record.id}", json={"city": "x"}, headers=sales_headers)
        assert resp.status_code == 403

    def test_suspended_institution_blocks_create(self, client, db_session, sales_headers, institution):
        institution.phase = "suspended"
        db_session.commit()
        resp = client.post(
            "/api/crm/clients", json={"name": "A", "institution_id": institution.id}, headers=sales_headers
        )
        assert resp.status_code == 403
