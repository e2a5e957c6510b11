import pytest
import requests
from unittest.mock import patch, MagicMock

from carbon_exchange.services.ai_service import (
    FALLBACK_INSIGHTS,
    calculate_carbon_footprint,
    classify_product,
    fallback_footprint,
    generate_market_insights,
    parse_footprint_input,
    query_gemini,
    query_ollama,
    summarize_market,
    summarize_sustainability
)


@pytest.fixture
def footprint_input():
    return {
        "employeeCount": 10,
        "annualRevenue": 500000,
        "industryType": "Technology",
        "energyConsumption": 10000,
        "businessTravelDistance": 5000
    }


def test_parse_footprint_input(footprint_input):
    data = parse_footprint_input(footprint_input)
    assert data["industryType"] == "technology"
    assert data["employeeCount"] == 10.0

    with pytest.raises(ValueError) as exc_info:
        parse_footprint_input({"employeeCount": 10})
    assert "annualRevenue" in str(exc_info.value)

    with pytest.raises(ValueError):
        parse_footprint_input(dict(footprint_input, employeeCount="many"))
    with pytest.raises(ValueError):
        parse_footprint_input(dict(footprint_input, energyConsumption=-5))


def test_fallback_footprint(footprint_input):
    result = fallback_footprint(parse_footprint_input(footprint_input))
    # 10 * 4.2 + 10000 * 0.5 / 1000 + 5000 * 0.2 / 1000
    assert result["totalFootprint"] == 48.0
    assert result["recommendedCredits"] == 53
    assert result["breakdown"]["industryMultiplier"] == 4.2
    assert result["fallback"] is True


def test_fallback_footprint_scales_with_revenue(footprint_input):
    data = parse_footprint_input(dict(footprint_input, annualRevenue=10_000_000, industryType="unknown"))
    result = fallback_footprint(data)
    # (60 + 5 + 1) * 1.1
    assert result["totalFootprint"] == 72.6
    assert result["breakdown"]["industryMultiplier"] == 6.0


def test_calculate_carbon_footprint_uses_model_answer(footprint_input):
    answer = (
        'Here you go: {"totalFootprint": 50, "breakdown": {"employeeBasedEmissions": 42, '
        '"energyEmissions": 5, "travelEmissions": 1, "industryMultiplier": 4.2}, '
        '"recommendedCredits": 55, "insights": ["a", "b", "c"]}'
    )
    with patch('carbon_exchange.services.ai_service.generate_text', return_value=answer):
        result = calculate_carbon_footprint(parse_footprint_input(footprint_input))
    assert result["totalFootprint"] == 50
    assert result["fallback"] is False


def test_calculate_carbon_footprint_falls_back(footprint_input):
    with patch('carbon_exchange.services.ai_service.generate_text', return_value='{"total": "lots"}'):
        result = calculate_carbon_footprint(parse_footprint_input(footprint_input))
    assert result["fallback"] is True
    assert result["totalFootprint"] == 48.0


def test_generate_market_insights():
    with patch('carbon_exchange.services.ai_service.generate_text', return_value='["one", "two"]'):
        assert generate_market_insights() == {"insights": ["one", "two"], "fallback": False}

    with patch('carbon_exchange.services.ai_service.generate_text', return_value=None):
        result = generate_market_insights()
    assert result["fallback"] is True
    assert result["insights"] == FALLBACK_INSIGHTS


def test_query_ollama_timeout():
    with patch('requests.post', side_effect=requests.Timeout()):
        assert query_ollama("prompt") is None


def test_query_ollama(monkeypatch):
    monkeypatch.setenv("OLLAMA_URL", "http://ollama:11434")
    response = MagicMock(ok=True)
    response.json.return_value = {"message": {"content": "hello"}}
    with patch('requests.post', return_value=response) as mock_post:
        assert query_ollama("prompt") == "hello"
    assert mock_post.call_args[0][0] == "http://ollama:11434/api/chat"
    assert mock_post.call_args[1]["timeout"] == 10


def test_query_gemini_without_key(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    assert query_gemini("prompt") is None


def test_classify_product():
    assert classify_product("Offset pack", "Verified carbon credit bundle") == "Verified Carbon Offset"
    assert classify_product("Tote", "Made from recycled bottles") == "Recycled Material"
    assert classify_product("Panel", "Rooftop solar kit") == "Renewable Energy Product"
    assert classify_product("Mug", "Ceramic") == "Sustainable Product"


def test_summarize_sustainability():
    assert summarize_sustainability("Short text.") == "Short text."
    text = "First sentence here. " * 20
    summary = summarize_sustainability(text, limit=50)
    assert len(summary) <= 50
    assert summary.endswith(".")


def test_summarize_market():
    listings = [
        {"type": "reforestation", "availableQuantity": 100, "pricePerCredit": 10.0},
        {"type": "reforestation", "availableQuantity": 300, "pricePerCredit": 20.0},
        {"type": "renewable_energy", "availableQuantity": 50, "pricePerCredit": 18.0},
    ]
    summary = summarize_market(listings)
    assert summary["reforestation"] == {"availableCredits": 400, "averagePrice": 17.5}
    assert summary["renewable_energy"]["averagePrice"] == 18.0


# Routes
def test_market_insights_route(client):
    with patch('carbon_exchange.services.ai_service.generate_text', return_value=None), \
         patch('carbon_exchange.routes.insights_routes.get_available_credits', return_value=[]):
        response = client.get('/api/market-insights')
    assert response.status_code == 200
    assert response.json['fallback'] is True
    assert len(response.json['insights']) == 5
    assert 'timestamp' in response.json


def test_carbon_footprint_route(client, footprint_input):
    with patch('carbon_exchange.services.ai_service.generate_text', return_value=None):
        response = client.post('/api/carbon-footprint', json=footprint_input)
    assert response.status_code == 200
    assert response.json['recommendedCredits'] == 53


def test_carbon_footprint_route_stores_for_buyer(client, sign_in, buyer_user, buyer_profile, footprint_input):
    sign_in(buyer_user)
    with patch('carbon_exchange.services.ai_service.generate_text', return_value=None), \
         patch('carbon_exchange.routes.insights_routes.get_buyer_profile', return_value=buyer_profile), \
         patch('carbon_exchange.routes.insights_routes.store_calculation') as mock_store, \
         patch('carbon_exchange.routes.insights_routes.record_buyer_footprint') as mock_record:
        response = client.post('/api/carbon-footprint', json=footprint_input)

    assert response.status_code == 200
    mock_store.assert_called_once()
    mock_record.assert_called_once_with('buyer-1', 48.0, 53)


def test_carbon_footprint_route_bad_input(client):
    response = client.post('/api/carbon-footprint', json={"employeeCount": 5})
    assert response.status_code == 400


def test_product_insights_route(client):
    response = client.post('/api/product-insights', json={
        "productName": "Panel", "description": "Rooftop solar kit."
    })
    assert response.status_code == 200
    assert response.json == {'category': 'Renewable Energy Product', 'summary': 'Rooftop solar kit.'}
