def test_adding_same_product_merges_rows(user_client, make_product, store):
    product = make_product(stock=5)
    assert user_client.post("/api/cart", json={"product_id": product.id, "quantity": 1}).status_code == 201
    resp = user_client.post("/api/cart", json={"product_id": product.id, "quantity": 2})
    assert resp.status_code == 201
    assert resp.json()["quantity"] == 3

    cart = user_client.get("/api/cart").json()
    assert len(cart) == 1
    assert cart[0]["quantity"] == 3
    assert cart[0]["product"]["name"] == "Study Headphones"
    assert len(store.cart_items.find(user_id=user_client.user.id, product_id=product.id)) == 1


def test_cart_quantity_bounded_by_stock(user_client, make_product):
    product = make_product(stock=2)
    resp = user_client.post("/api/cart", json={"product_id": product.id, "quantity": 3})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Not enough stock"

    user_client.post("/api/cart", json={"product_id": product.id, "quantity": 2})
    assert user_client.post("/api/cart", json={"product_id": product.id, "quantity": 1}).status_code == 400

    item_id = user_client.get("/api/cart").json()[0]["id"]
    assert user_client.put(f"/api/cart/{item_id}", json={"quantity": 5}).status_code == 400
    resp = user_client.put(f"/api/cart/{item_id}", json={"quantity": 1})
    assert resp.status_code == 200
    assert resp.json()["quantity"] == 1


def test_cart_rejects_unknown_product_and_bad_quantity(user_client, make_product):
    assert user_client.post("/api/cart", json={"product_id": 999, "quantity": 1}).status_code == 400
    product = make_product()
    assert user_client.post("/api/cart", json={"product_id": product.id, "quantity": 0}).status_code == 400


def test_cart_items_are_private(user_client, make_client, make_user, make_product):
    product = make_product()
    item_id = user_client.post("/api/cart", json={"product_id": product.id, "quantity": 1}).json()["id"]

    make_user("otis")
    other = make_client()
    other.post("/api/auth/login", json={"username": "otis", "password": "secret123"})
    assert other.get("/api/cart").json() == []
    assert other.put(f"/api/cart/{item_id}", json={"quantity": 1}).status_code == 404
    assert other.delete(f"/api/cart/{item_id}").status_code == 404

    assert user_client.delete(f"/api/cart/{item_id}").status_code == 200
    assert user_client.get("/api/cart").json() == []


def test_clear_cart(user_client, make_product):
    for name in ("Notebook", "Lamp"):
        product = make_product(name=name)
        user_client.post("/api/cart", json={"product_id": product.id, "quantity": 1})
    assert user_client.delete("/api/cart").status_code == 200
    assert user_client.get("/api/cart").json() == []


def test_cart_requires_session(client):
    assert client.get("/api/cart").status_code == 401
