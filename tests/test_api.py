from __future__ import annotations

from datetime import date, datetime

from bankrecon.models.models import BankTransaction

WINDOW = {"start_date": "2024-06-01T00:00:00", "end_date": "2024-06-30T00:00:00"}


def seed_ledger(seed, business_id):
    invoice_id = seed.invoice(
        business_id, amount="11800", on=date(2024, 6, 8), number="INV-2024-001", counterparty="Acme Traders Pvt Ltd"
    )
    seed.bank_txn(business_id, amount="11700", when=datetime(2024, 6, 10), reference="INV-2024-001", counterparty="Acme Traders")
    seed.bank_txn(business_id, amount="42.00", when=datetime(2024, 6, 15), reference="CASH DEP")
    return invoice_id


def start_batch(client, business_id):
    r = client.post(f"/businesses/{business_id}/reconciliation/batches", json=WINDOW)
    assert r.status_code == 202
    body = r.json()
    assert body["batch_number"].startswith("REC")
    return body["id"]


def test_rules_crud(client, business):
    r = client.post(f"/businesses/{business}/reconciliation/rules", json={"name": "strict", "priority": 20, "min_match_score": 80})
    assert r.status_code == 201
    rule = r.json()
    assert rule["is_active"] is True
    assert rule["reference_weight"] == 50

    r = client.post(f"/businesses/{business}/reconciliation/rules", json={"name": "bad", "reference_weight": 90})
    assert r.status_code == 422

    r = client.patch(f"/reconciliation/rules/{rule['id']}", json={"min_match_score": 60})
    assert r.status_code == 200
    assert r.json()["min_match_score"] == 60

    r = client.patch(f"/reconciliation/rules/{rule['id']}", json={"auto_match_score": 50})
    assert r.status_code == 422

    r = client.delete(f"/reconciliation/rules/{rule['id']}")
    assert r.status_code == 200
    assert r.json()["is_active"] is False

    r = client.get(f"/businesses/{business}/reconciliation/rules")
    assert r.json() == []
    r = client.get(f"/businesses/{business}/reconciliation/rules", params={"include_inactive": True})
    assert [x["id"] for x in r.json()] == [rule["id"]]

    assert client.delete("/reconciliation/rules/999").status_code == 404


def test_reconciliation_flow(client, seed, business):
    invoice_id = seed_ledger(seed, business)
    batch_id = start_batch(client, business)

    r = client.get(f"/reconciliation/batches/{batch_id}")
    assert r.status_code == 200
    batch = r.json()
    assert batch["status"] == "COMPLETED"
    assert batch["total_transactions"] == 2
    assert batch["failures"] == []
    by_status = {i["status"]: i for i in batch["items"]}
    matched, unmatched = by_status["MATCHED"], by_status["UNMATCHED"]
    assert matched["match_score"] == 77
    assert matched["matched_candidate_id"] == invoice_id

    r = client.get(f"/reconciliation/batches/{batch_id}/unmatched", params={"limit": 10})
    assert r.status_code == 200
    page = r.json()
    assert page["pagination"]["total"] == 1
    assert page["items"][0]["id"] == unmatched["id"]

    r = client.get(f"/reconciliation/items/{matched['id']}/candidates")
    assert r.status_code == 200
    assert r.json()[0]["id"] == invoice_id
    assert r.json()[0]["score"] == 77

    r = client.post(f"/reconciliation/items/{matched['id']}/apply", json={"resolved_by": "alice"})
    assert r.status_code == 200
    assert r.json() == {"success": True, "item_id": matched["id"], "status": "APPLIED", "changed": True}

    r = client.post(f"/reconciliation/items/{matched['id']}/apply", json={"resolved_by": "alice"})
    assert r.status_code == 200
    assert r.json()["changed"] is False

    r = client.post(f"/reconciliation/items/{unmatched['id']}/apply", json={"resolved_by": "alice"})
    assert r.status_code == 409

    r = client.post(f"/reconciliation/items/{unmatched['id']}/exception", json={"notes": "", "resolved_by": "ops"})
    assert r.status_code == 422
    r = client.post(f"/reconciliation/items/{unmatched['id']}/exception", json={"notes": "bank fee", "resolved_by": "ops"})
    assert r.json()["status"] == "EXCEPTION"
    r = client.post(f"/reconciliation/items/{unmatched['id']}/reopen", json={"by": "ops"})
    assert r.json()["status"] == "PENDING"

    r = client.post(f"/reconciliation/items/{matched['id']}/unmatch", json={"reason": "wrong invoice", "by": "alice"})
    assert r.status_code == 200
    assert r.json()["status"] == "PENDING"

    r = client.post(
        f"/reconciliation/items/{matched['id']}/manual-match",
        json={"candidate_kind": "INVOICE", "candidate_id": invoice_id, "resolved_by": "alice", "notes": "confirmed"},
    )
    assert r.status_code == 200
    assert r.json()["status"] == "APPLIED"

    r = client.get(f"/reconciliation/items/{matched['id']}/history")
    assert [h["to_status"] for h in r.json()] == ["MATCHED", "APPLIED", "PENDING", "MANUALLY_MATCHED", "APPLIED"]

    r = client.get(f"/businesses/{business}/reconciliation/summary", params={"period": "week"})
    assert r.status_code == 200
    summary = r.json()
    assert summary["batch_count"] == 1
    assert summary["matched_count"] == 1
    assert summary["manual_match_count"] == 1
    assert summary["auto_match_rate_percent"] == 0

    r = client.get(f"/businesses/{business}/reconciliation/batches")
    assert [b["id"] for b in r.json()] == [batch_id]


def test_error_statuses(client, business):
    assert client.post("/businesses/999/reconciliation/batches", json=WINDOW).status_code == 404
    assert client.get("/reconciliation/batches/999").status_code == 404
    assert client.get("/reconciliation/batches/999/unmatched").status_code == 404
    assert client.get("/reconciliation/items/999").status_code == 404
    assert client.post("/reconciliation/items/999/apply", json={"resolved_by": "x"}).status_code == 404
    assert client.post("/reconciliation/items/999/unmatch", json={"reason": "x", "by": "x"}).status_code == 404

    bad_window = {"start_date": "2024-06-30T00:00:00", "end_date": "2024-06-01T00:00:00"}
    assert client.post(f"/businesses/{business}/reconciliation/batches", json=bad_window).status_code == 422
    r = client.get(f"/businesses/{business}/reconciliation/summary", params={"period": "decade"})
    assert r.status_code == 422


def test_graphql_batch_and_mutation(client, seed, business):
    seed_ledger(seed, business)
    batch_id = start_batch(client, business)

    query = """
    query ($id: Int!) {
      batch(batchId: $id) { batchNumber status totalTransactions items { id status matchScore } }
    }
    """
    r = client.post("/graphql", json={"query": query, "variables": {"id": batch_id}})
    assert r.status_code == 200
    data = r.json()["data"]["batch"]
    assert data["status"] == "COMPLETED"
    assert data["totalTransactions"] == 2
    unmatched = next(i for i in data["items"] if i["status"] == "UNMATCHED")

    mutation = """
    mutation ($id: Int!) {
      markException(itemId: $id, notes: "duplicate", resolvedBy: "ops") { itemId status changed }
    }
    """
    r = client.post("/graphql", json={"query": mutation, "variables": {"id": unmatched["id"]}})
    assert r.json()["data"]["markException"] == {"itemId": unmatched["id"], "status": "EXCEPTION", "changed": True}

    r = client.post("/graphql", json={"query": '{ summary(businessId: %d, period: "week") { batchCount autoMatchRatePercent } }' % business})
    assert r.json()["data"]["summary"] == {"batchCount": 1, "autoMatchRatePercent": 0}

    r = client.post("/graphql", json={"query": "{ batch(batchId: 999) { id } }"})
    assert r.json()["errors"][0]["message"] == "Batch not found"


def gql(client, query, **variables):
    r = client.post("/graphql", json={"query": query, "variables": variables})
    assert r.status_code == 200
    return r.json()


def test_graphql_failed_apply_rolls_back(client, seed, business):
    invoice_id = seed.invoice(
        business, amount="11800", on=date(2024, 6, 8), number="INV-2024-001", counterparty="Acme Traders Pvt Ltd"
    )
    first = seed.bank_txn(business, amount="11800", when=datetime(2024, 6, 10), reference="INV-2024-001", counterparty="Acme Traders")
    second = seed.bank_txn(business, amount="11800", when=datetime(2024, 6, 11), reference="INV-2024-001", counterparty="Acme Traders")
    batch_id = start_batch(client, business)

    items = {i["bank_transaction_id"]: i for i in client.get(f"/reconciliation/batches/{batch_id}").json()["items"]}
    assert {i["status"] for i in items.values()} == {"MATCHED"}
    assert {i["matched_candidate_id"] for i in items.values()} == {invoice_id}

    r = client.post(f"/reconciliation/items/{items[first]['id']}/apply", json={"resolved_by": "alice"})
    assert r.json()["status"] == "APPLIED"

    body = gql(
        client,
        "mutation ($id: Int!) { applyMatch(itemId: $id, resolvedBy: \"bob\") { status } }",
        id=items[second]["id"],
    )
    assert body["data"] is None
    assert "already reconciled" in body["errors"][0]["message"]

    assert seed.get(BankTransaction, second).is_reconciled is False
    assert client.get(f"/reconciliation/items/{items[second]['id']}").json()["status"] == "MATCHED"
    history = client.get(f"/reconciliation/items/{items[second]['id']}/history").json()
    assert [h["to_status"] for h in history] == ["MATCHED"]


def test_graphql_rejects_bad_paging(client, business):
    batch_id = start_batch(client, business)
    query = "query ($id: Int!, $limit: Int!) { unmatchedItems(batchId: $id, limit: $limit) { id } }"

    body = gql(client, query, id=batch_id, limit=0)
    assert body["errors"][0]["message"] == "limit must be between 1 and 100"
    body = gql(client, query, id=batch_id, limit=101)
    assert body["errors"][0]["message"] == "limit must be between 1 and 100"
    assert gql(client, query, id=batch_id, limit=5)["data"] == {"unmatchedItems": []}


def test_graphql_rules_candidates_and_status_counts(client, seed, business):
    invoice_id = seed_ledger(seed, business)

    body = gql(
        client,
        """
        mutation ($biz: Int!) {
          createRule(businessId: $biz, input: {name: "strict", minMatchScore: 80}) {
            id name minMatchScore referenceWeight isActive
          }
        }
        """,
        biz=business,
    )
    rule = body["data"]["createRule"]
    assert rule["name"] == "strict"
    assert rule["minMatchScore"] == 80
    assert rule["referenceWeight"] == 50
    assert rule["isActive"] is True

    body = gql(
        client,
        'mutation ($biz: Int!) { createRule(businessId: $biz, input: {name: "bad", referenceWeight: 90}) { id } }',
        biz=business,
    )
    assert "weights must sum to at most 100" in body["errors"][0]["message"]

    body = gql(
        client,
        "mutation ($id: Int!) { updateRule(ruleId: $id, input: {minMatchScore: 60}) { minMatchScore priority } }",
        id=rule["id"],
    )
    assert body["data"]["updateRule"] == {"minMatchScore": 60, "priority": 10}

    body = gql(client, "mutation ($id: Int!) { deactivateRule(ruleId: $id) { isActive } }", id=rule["id"])
    assert body["data"]["deactivateRule"] == {"isActive": False}
    body = gql(client, "query ($biz: Int!) { rules(businessId: $biz, includeInactive: true) { id } }", biz=business)
    assert body["data"]["rules"] == [{"id": rule["id"]}]
    assert gql(client, "query ($biz: Int!) { rules(businessId: $biz) { id } }", biz=business)["data"]["rules"] == []

    batch_id = start_batch(client, business)
    items = client.get(f"/reconciliation/batches/{batch_id}").json()["items"]
    matched = next(i for i in items if i["status"] == "MATCHED")

    body = gql(client, "query ($id: Int!) { itemCandidates(itemId: $id) { kind id score } }", id=matched["id"])
    assert body["data"]["itemCandidates"][0] == {"kind": "INVOICE", "id": invoice_id, "score": 77}

    body = gql(
        client,
        'query ($biz: Int!) { summary(businessId: $biz, period: "week") { itemsByStatus { status count } } }',
        biz=business,
    )
    assert body["data"]["summary"]["itemsByStatus"] == [
        {"status": "MATCHED", "count": 1},
        {"status": "UNMATCHED", "count": 1},
    ]


def test_auto_run_route(client, seed, business):
    seed_ledger(seed, business)
    seed.business("No Rules Inc")
    r = client.post(f"/businesses/{business}/reconciliation/rules", json={"name": "nightly"})
    assert r.status_code == 201

    r = client.post("/reconciliation/auto-run", json=WINDOW)
    assert r.status_code == 200
    body = r.json()
    assert (body["total"], body["processed"], body["errors"]) == (1, 1, 0)

    batch = client.get(f"/reconciliation/batches/{body['batch_ids'][0]}").json()
    assert batch["business_id"] == business
    assert batch["total_transactions"] == 2

    body = gql(client, "mutation { autoRun { total processed errors batchIds } }")
    run = body["data"]["autoRun"]
    assert (run["total"], run["processed"], run["errors"]) == (1, 1, 0)
    assert len(run["batchIds"]) == 1
