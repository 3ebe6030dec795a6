"""Integration tests for the batch endpoints."""

import base64
import hashlib


DOCUMENT = b"%PDF-1.7 Paracetamol 500mg lot B1"


def _payload(batch_id="B1", document=DOCUMENT, **metadata):
    return {
        "batch_id": batch_id,
        "document": base64.b64encode(document).decode(),
        "metadata": metadata,
    }


async def _minted(client, headers, batch_id="B1"):
    from pharmaseal.deps import get_lifecycle_manager

    resp = await client.post("/batches", json=_payload(batch_id, drug_name="Paracetamol"), headers=headers)
    assert resp.status_code == 201, resp.text
    await get_lifecycle_manager().drain()
    batch = await client.get(f"/batches/{batch_id}", headers=headers)
    return batch.json()["data"]


class TestCreateBatch:
    async def test_create_returns_minting(self, client, auth_headers, wallets):
        headers = await auth_headers(wallets["manufacturer"])
        resp = await client.post("/batches", json=_payload(), headers=headers)
        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["status"] == "MINTING"
        assert data["token_id"] is None
        assert data["content_hash"] == hashlib.sha256(DOCUMENT).hexdigest()

    async def test_background_confirmation_mints(self, client, auth_headers, wallets):
        headers = await auth_headers(wallets["manufacturer"])
        batch = await _minted(client, headers)
        assert batch["status"] == "MINTED"
        assert batch["token_id"]
        assert batch["metadata"] == {"drug_name": "Paracetamol"}

    async def test_distributor_cannot_create(self, client, auth_headers, wallets):
        resp = await client.post(
            "/batches", json=_payload(), headers=await auth_headers(wallets["distributor"]),
        )
        assert resp.status_code == 403

    async def test_requires_session(self, client):
        resp = await client.post("/batches", json=_payload())
        assert resp.status_code == 401

    async def test_bad_base64(self, client, auth_headers, wallets):
        body = _payload()
        body["document"] = "not base64!!"
        resp = await client.post("/batches", json=body, headers=await auth_headers(wallets["manufacturer"]))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"

    async def test_duplicate(self, client, auth_headers, wallets):
        headers = await auth_headers(wallets["manufacturer"])
        await _minted(client, headers)
        resp = await client.post("/batches", json=_payload(), headers=headers)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "DUPLICATE_BATCH"

    async def test_lot_number_matching_a_token(self, client, auth_headers, wallets):
        from pharmaseal.deps import get_lifecycle_manager

        headers = await auth_headers(wallets["manufacturer"])
        first = await _minted(client, headers, "LOT-A")
        assert first["token_id"] == "1"

        created = await client.post("/batches", json=_payload("1"), headers=headers)
        assert created.status_code == 201
        await get_lifecycle_manager().drain()

        resp = await client.get("/batches/1", headers=headers)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "AMBIGUOUS_IDENTIFIER"
        by_token = await client.get("/batches/2", headers=headers)
        assert by_token.json()["data"]["batch_id"] == "1"

    async def test_ledger_rejection_is_422(self, client, auth_headers, wallets):
        from pharmaseal.deps import get_ledger

        get_ledger().reject_next = "contract paused"
        headers = await auth_headers(wallets["manufacturer"])
        resp = await client.post("/batches", json=_payload(), headers=headers)
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "LEDGER_REJECTED"
        batch = await client.get("/batches/B1", headers=headers)
        assert batch.json()["data"]["status"] == "FAILED"

    async def test_document_store_down_is_503(self, client, auth_headers, wallets):
        from pharmaseal.deps import get_document_store

        get_document_store().available = False
        resp = await client.post(
            "/batches", json=_payload(), headers=await auth_headers(wallets["manufacturer"]),
        )
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "SERVICE_DEGRADED"


class TestTransferAndStatus:
    async def test_transfer_flow(self, client, auth_headers, wallets):
        manufacturer = await auth_headers(wallets["manufacturer"])
        batch = await _minted(client, manufacturer)
        token = batch["token_id"]

        resp = await client.post(
            f"/batches/{token}/transfer", json={"to_wallet": wallets["distributor"]},
            headers=manufacturer,
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["custodian"] == wallets["distributor"]
        assert resp.json()["data"]["status"] == "IN_TRANSIT"

        history = await client.get(f"/batches/{token}/history", headers=manufacturer)
        data = history.json()["data"]
        assert [e["action"] for e in data["entries"]] == ["CREATED", "MINTED", "TRANSFERRED"]
        assert data["chain"]["valid"] is True

        distributor = await auth_headers(wallets["distributor"])
        delivered = await client.put(
            f"/batches/{token}/status", json={"status": "DELIVERED"}, headers=distributor,
        )
        assert delivered.status_code == 200
        assert delivered.json()["data"]["status"] == "DELIVERED"

        verified = await client.put(
            f"/batches/{token}/status", json={"status": "VERIFIED"},
            headers=await auth_headers(wallets["regulator"]),
        )
        assert verified.status_code == 200
        assert verified.json()["data"]["status"] == "VERIFIED"

    async def test_non_custodian_transfer_forbidden(self, client, auth_headers, wallets):
        batch = await _minted(client, await auth_headers(wallets["manufacturer"]))
        resp = await client.post(
            f"/batches/{batch['token_id']}/transfer", json={"to_wallet": wallets["retailer"]},
            headers=await auth_headers(wallets["distributor"]),
        )
        assert resp.status_code == 403

    async def test_stale_status_is_409(self, client, auth_headers, wallets):
        batch = await _minted(client, await auth_headers(wallets["manufacturer"]))
        resp = await client.put(
            f"/batches/{batch['token_id']}/status", json={"status": "VERIFIED"},
            headers=await auth_headers(wallets["regulator"]),
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "STALE_PRECONDITION"

    async def test_unknown_token_is_404(self, client, auth_headers, wallets):
        resp = await client.get("/batches/999", headers=await auth_headers(wallets["retailer"]))
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "BATCH_NOT_FOUND"


class TestVerifyEndpoint:
    async def test_verify_is_public(self, client, auth_headers, wallets):
        batch = await _minted(client, await auth_headers(wallets["manufacturer"]))
        resp = await client.get(f"/batches/verify/{batch['token_id']}")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["authentic"] is True
        assert data["result"] == "AUTHENTIC"
        assert data["batch_id"] == "B1"

    async def test_verify_by_batch_id_after_transfer(self, client, auth_headers, wallets):
        manufacturer = await auth_headers(wallets["manufacturer"])
        batch = await _minted(client, manufacturer)
        await client.post(
            f"/batches/{batch['token_id']}/transfer",
            json={"to_wallet": wallets["distributor"]}, headers=manufacturer,
        )
        data = (await client.get("/batches/verify/B1")).json()["data"]
        assert data["result"] == "AUTHENTIC"
        assert data["custodian"] == wallets["distributor"]

    async def test_verify_tampered(self, client, auth_headers, wallets):
        from pharmaseal.deps import get_document_store

        batch = await _minted(client, await auth_headers(wallets["manufacturer"]))
        get_document_store()._objects[batch["document_ref"]] = b"forged"
        data = (await client.get(f"/batches/verify/{batch['token_id']}")).json()["data"]
        assert data["authentic"] is False
        assert data["result"] == "TAMPERED"

    async def test_verify_unknown(self, client):
        resp = await client.get("/batches/verify/nope")
        assert resp.status_code == 404


class TestQRCodes:
    async def test_qr_payload_then_scan(self, client, auth_headers, wallets):
        batch = await _minted(client, await auth_headers(wallets["manufacturer"]))
        token = batch["token_id"]

        resp = await client.get(
            f"/batches/{token}/qr", headers=await auth_headers(wallets["retailer"]),
        )
        assert resp.status_code == 200
        issued = resp.json()["data"]
        assert issued["url"] == f"http://localhost:8080/batches/verify/{token}"
        assert issued["payload"]["batch_id"] == "B1"

        scanned = await client.post(
            "/batches/verify/qr",
            json={"payload": issued["payload"], "signature": issued["signature"]},
        )
        assert scanned.status_code == 200
        data = scanned.json()["data"]
        assert data["result"] == "AUTHENTIC"
        assert data["checks"]["qr_signature"] is True

    async def test_forged_qr(self, client, auth_headers, wallets):
        batch = await _minted(client, await auth_headers(wallets["manufacturer"]))
        headers = await auth_headers(wallets["manufacturer"])
        issued = (await client.get(f"/batches/{batch['token_id']}/qr", headers=headers)).json()["data"]
        forged = dict(issued["payload"], manufacturer="0x" + "99" * 20)
        resp = await client.post(
            "/batches/verify/qr", json={"payload": forged, "signature": issued["signature"]},
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["authentic"] is False
        assert resp.json()["data"]["result"] == "TAMPERED"

    async def test_qr_requires_session(self, client, auth_headers, wallets):
        batch = await _minted(client, await auth_headers(wallets["manufacturer"]))
        resp = await client.get(f"/batches/{batch['token_id']}/qr")
        assert resp.status_code == 401


class TestListAndReconcile:
    async def test_list_paginates(self, client, auth_headers, wallets):
        headers = await auth_headers(wallets["manufacturer"])
        for batch_id in ("B1", "B2", "B3"):
            await _minted(client, headers, batch_id)
        resp = await client.get("/batches?page=1&page_size=2", headers=headers)
        data = resp.json()["data"]
        assert data["total"] == 3
        assert len(data["items"]) == 2
        assert data["pages"] == 2

    async def test_list_filters_by_status(self, client, auth_headers, wallets):
        headers = await auth_headers(wallets["manufacturer"])
        await _minted(client, headers, "B1")
        resp = await client.get("/batches?status=IN_TRANSIT", headers=headers)
        assert resp.json()["data"]["total"] == 0

    async def test_reconcile(self, client, auth_headers, wallets):
        headers = await auth_headers(wallets["regulator"])
        batch = await _minted(client, await auth_headers(wallets["manufacturer"]))
        resp = await client.post(f"/batches/{batch['token_id']}/reconcile", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "MINTED"
        assert resp.json()["data"]["changes"] == []

    async def test_reconcile_forbidden_for_retailer(self, client, auth_headers, wallets):
        batch = await _minted(client, await auth_headers(wallets["manufacturer"]))
        resp = await client.post(
            f"/batches/{batch['token_id']}/reconcile",
            headers=await auth_headers(wallets["retailer"]),
        )
        assert resp.status_code == 403


class TestHealth:
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "ok"
