import base64
import io
import json

import pytest
import requests
from PIL import Image

from bestmealmate.food_scan import InvalidImageError, decode_image_data_url, map_category, parse_detected_items


def _data_url(image_format: str = "PNG", claimed: str = "png") -> str:
  buffer = io.BytesIO()
  Image.new("RGB", (4, 4), "green").save(buffer, format=image_format)
  return f"data:image/{claimed};base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


@pytest.fixture
def ai_reply(monkeypatch, fake_response):
  calls = []

  def install(text=None, error=None):
    def fake_post(url, headers=None, json=None, timeout=None):
      calls.append(json)
      if error is not None:
        raise error
      return fake_response(200, {"content": [{"type": "text", "text": text}]})

    monkeypatch.setattr("bestmealmate.ai_service.requests.post", fake_post)
    return calls

  return install


def test_image_is_required(client):
  response = client.post("/api/scan-food", json={"location": "fridge"})

  assert response.status_code == 400
  assert response.get_json()["error"] == "No image provided"


@pytest.mark.parametrize(
  "image",
  [
    "https://example.com/fridge.jpg",
    "data:image/png;base64,@@@not-base64@@@",
    "data:image/png;base64," + base64.b64encode(b"plain text, not pixels").decode("ascii"),
    ["not", "a", "string"],
  ],
)
def test_malformed_images_are_rejected(client, image):
  response = client.post("/api/scan-food", json={"image": image})

  assert response.status_code == 400
  assert response.get_json()["error"] == "Invalid image format"


def test_media_type_comes_from_the_pixels():
  media_type, data = decode_image_data_url(_data_url("JPEG", claimed="png"))

  assert media_type == "image/jpeg"
  assert base64.b64decode(data)[:2] == b"\xff\xd8"


def test_unsupported_format_is_rejected():
  with pytest.raises(InvalidImageError):
    decode_image_data_url(_data_url("BMP", claimed="bmp"))


def test_camera_scan_returns_items_and_summary(client, ai_reply):
  reply = json.dumps(
    {
      "items": [
        {"name": "Organic Whole Milk", "category": "dairy", "calories": 150, "protein": 8, "carbs": 12, "fat": 8},
        {"name": "Honeycrisp Apples", "category": "produce", "calories": 95, "carbs": 25},
        {"name": "Mystery Jar", "category": "unknown"},
      ]
    }
  )
  calls = ai_reply("Here is what I found:\n" + reply)

  response = client.post("/api/scan-food", json={"image": _data_url(), "location": "fridge"})

  assert response.status_code == 200
  body = response.get_json()
  assert body["scanType"] == "camera"
  assert body["totalItems"] == 3
  assert [item["expiryDays"] for item in body["items"]] == [14, 7, 14]
  assert body["nutritionSummary"] == {
    "totalCalories": 245,
    "totalProtein": 8,
    "totalCarbs": 37,
    "totalFat": 8,
  }
  content = calls[0]["messages"][0]["content"]
  assert content[0]["source"]["media_type"] == "image/png"
  assert "fridge" in content[1]["text"]
  assert calls[0]["max_tokens"] == 2048


def test_unparsable_reply_yields_no_items(client, ai_reply):
  ai_reply("I can't tell what is in this picture.")

  body = client.post("/api/scan-food", json={"image": _data_url()}).get_json()

  assert body == {"items": [], "scanType": "camera", "totalItems": 0}


def test_ai_failure_serves_demo_scan(client, ai_reply):
  ai_reply(error=requests.ConnectionError("unreachable"))

  response = client.post("/api/scan-food", json={"image": _data_url()})

  assert response.status_code == 200
  body = response.get_json()
  assert body["demo"] is True
  assert body["totalItems"] == 5
  assert body["nutritionSummary"] == {
    "totalCalories": 540,
    "totalProtein": 23,
    "totalCarbs": 39,
    "totalFat": 33,
  }


def test_barcode_lookup(client, monkeypatch, fake_response):
  requested = []

  def fake_get(url, timeout=None):
    requested.append(url)
    return fake_response(
      200,
      {
        "status": 1,
        "product": {
          "product_name": "Greek Yogurt",
          "quantity": "500 g",
          "categories_tags": ["en:dairy", "en:yogurts"],
          "nutriments": {"energy-kcal_100g": 97.4, "proteins_100g": 9.2, "carbohydrates_100g": 3.6, "fat_100g": 5},
        },
      },
    )

  monkeypatch.setattr("bestmealmate.food_scan.requests.get", fake_get)

  response = client.post("/api/scan-food", json={"barcode": "5201054017340"})

  assert response.status_code == 200
  body = response.get_json()
  assert body["scanType"] == "barcode"
  assert body["totalItems"] == 1
  item = body["items"][0]
  assert item["name"] == "Greek Yogurt"
  assert item["category"] == "dairy"
  assert (item["calories"], item["protein"], item["carbs"], item["fat"]) == (97, 9, 4, 5)
  assert item["barcode"] == "5201054017340"
  assert requested == ["https://world.openfoodfacts.org/api/v0/product/5201054017340.json"]


def test_unknown_barcode_is_not_found(client, monkeypatch, fake_response):
  monkeypatch.setattr(
    "bestmealmate.food_scan.requests.get",
    lambda url, timeout=None: fake_response(200, {"status": 0, "status_verbose": "product not found"}),
  )

  response = client.post("/api/scan-food", json={"barcode": "0000000000000"})

  assert response.status_code == 404
  assert response.get_json()["error"] == "Product not found for barcode"


def test_category_mapping():
  assert map_category("en:frozen-foods") == "frozen"
  assert map_category("en:plant-based-foods") == "pantry"


def test_parse_ignores_non_dict_items():
  assert parse_detected_items('{"items": ["milk", {"name": "Eggs", "category": "dairy"}]}') == [
    {"name": "Eggs", "category": "dairy", "expiryDays": 14}
  ]


@pytest.mark.parametrize(
  "payload",
  [
    {"status": 1, "product": "oops"},
    {"status": 1, "product": ["not", "a", "product"]},
    ["status", 1],
  ],
)
def test_malformed_product_data_is_not_found(client, monkeypatch, fake_response, payload):
  monkeypatch.setattr("bestmealmate.food_scan.requests.get", lambda url, timeout=None: fake_response(200, payload))

  response = client.post("/api/scan-food", json={"barcode": "123"})

  assert response.status_code == 404


def test_loosely_typed_product_fields_are_tolerated(client, monkeypatch, fake_response):
  product = {
    "product_name": "Oat Drink",
    "categories_tags": "en:beverages",
    "nutriments": ["energy-kcal_100g", 46],
  }
  monkeypatch.setattr(
    "bestmealmate.food_scan.requests.get",
    lambda url, timeout=None: fake_response(200, {"status": 1, "product": product}),
  )

  response = client.post("/api/scan-food", json={"barcode": "123"})

  assert response.status_code == 200
  item = response.get_json()["items"][0]
  assert item["category"] == "pantry"
  assert item["calories"] == 0


def test_out_of_range_numbers_do_not_break_the_scan(client, ai_reply):
  ai_reply('{"items": [{"name": "x", "category": "dairy", "calories": 1e400, "protein": 3}]}')

  response = client.post("/api/scan-food", json={"image": _data_url()})

  assert response.status_code == 200
  summary = response.get_json()["nutritionSummary"]
  assert summary["totalCalories"] == 0
  assert summary["totalProtein"] == 3


def test_non_finite_barcode_nutrients_read_as_zero(client, monkeypatch, fake_response):
  product = {"product_name": "Mystery", "nutriments": {"energy-kcal_100g": float("inf"), "fat_100g": "NaN"}}
  monkeypatch.setattr(
    "bestmealmate.food_scan.requests.get",
    lambda url, timeout=None: fake_response(200, {"status": 1, "product": product}),
  )

  item = client.post("/api/scan-food", json={"barcode": "123"}).get_json()["items"][0]

  assert (item["calories"], item["fat"]) == (0, 0)


def test_non_finite_item_macros_are_zeroed():
  items = parse_detected_items('{"items": [{"name": "x", "category": "dairy", "calories": 1e400, "fat": 2}]}')

  assert items == [{"name": "x", "category": "dairy", "calories": 0, "fat": 2, "expiryDays": 14}]
