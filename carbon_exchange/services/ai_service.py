"""AI market insights and carbon footprint estimates.

Text generation runs on a local Ollama model or on Gemini, picked with
``AI_PROVIDER``. Every answer is checked before use and any failure falls
back to rule-based output, so callers always get a result.
"""
from typing import Dict, Any, List, Optional
import json
import logging
import math
import os
import re

import requests
from google import genai

logger = logging.getLogger(__name__)

OLLAMA_TIMEOUT = 10

INDUSTRY_MULTIPLIERS = {
    "manufacturing": 12.5,
    "energy": 15.2,
    "construction": 8.7,
    "transportation": 11.3,
    "technology": 4.2,
    "finance": 3.8,
    "healthcare": 6.5,
    "retail": 5.1,
    "other": 6.0,
}
DEFAULT_MULTIPLIER = 6.0
GRID_KG_PER_KWH = 0.5
TRAVEL_KG_PER_KM = 0.2

FALLBACK_INSIGHTS = [
    "Carbon credit prices expected to rise 15-20% in the next quarter",
    "Nature-based solutions seeing increased demand from corporate buyers",
    "New regulatory requirements driving market growth in renewable energy credits",
    "Blockchain verification systems gaining adoption for credit tracking",
    "Direct air capture technologies entering commercial scale",
]

MARKET_INSIGHTS_PROMPT = """Generate 5 current and relevant carbon credit market insights. Focus on:
1. Price trends and predictions
2. Regulatory changes
3. Technology developments
4. Market opportunities
5. Risk factors

Make them specific, actionable, and realistic. Respond ONLY with a JSON array of strings.
Example format: ["insight 1", "insight 2", "insight 3", "insight 4", "insight 5"]"""

FOOTPRINT_PROMPT = """Calculate the carbon footprint for a {industryType} company with the following data:
- Employees: {employeeCount}
- Annual Revenue: ${annualRevenue}
- Energy Consumption: {energyConsumption} kWh/year
- Business Travel: {businessTravelDistance} km/year

Please provide a JSON response with:
1. Total annual carbon footprint in tCO2e
2. Breakdown by category (employee-based, energy, travel)
3. Industry-specific multiplier used
4. Recommended carbon credits needed (110% of footprint)
5. 3 specific insights for this business type

Use these industry-standard emission factors:
- Manufacturing: 12.5 tCO2e/employee/year
- Technology: 4.2 tCO2e/employee/year
- Finance: 3.8 tCO2e/employee/year
- Energy: 15.2 tCO2e/employee/year
- Healthcare: 6.5 tCO2e/employee/year
- Retail: 5.1 tCO2e/employee/year
- Construction: 8.7 tCO2e/employee/year
- Transportation: 11.3 tCO2e/employee/year
- Grid electricity: 0.5 kg CO2e/kWh
- Business travel: 0.2 kg CO2e/km

Respond ONLY with valid JSON in this exact format:
{{
  "totalFootprint": number,
  "breakdown": {{
    "employeeBasedEmissions": number,
    "energyEmissions": number,
    "travelEmissions": number,
    "industryMultiplier": number
  }},
  "recommendedCredits": number,
  "insights": ["string", "string", "string"]
}}"""

FOOTPRINT_FIELDS = ("employeeCount", "annualRevenue", "industryType", "energyConsumption", "businessTravelDistance")


def query_ollama(prompt: str, timeout: int = OLLAMA_TIMEOUT) -> Optional[str]:
    """Ask the local Ollama model; None when it is unreachable or errors"""
    base_url = os.getenv("OLLAMA_URL", "http://localhost:11434")
    model = os.getenv("OLLAMA_MODEL", "phi3")
    try:
        response = requests.post(
            f"{base_url.rstrip('/')}/api/chat",
            json={
                "model": model,
                "messages": [{"role": "user", "content": prompt}],
                "stream": False
            },
            timeout=timeout
        )
        if not response.ok:
            logger.warning("Ollama API returned status %s", response.status_code)
            return None
        return (response.json().get("message") or {}).get("content") or None
    except requests.Timeout:
        logger.warning("Ollama request timed out")
    except (requests.RequestException, ValueError) as e:
        logger.warning("Ollama unavailable, using fallback logic: %s", e)
    return None


def query_gemini(prompt: str) -> Optional[str]:
    """Ask Gemini; None when no key is configured or the call fails"""
    api_key = os.getenv("GEMINI_API_KEY")
    if not api_key:
        return None
    try:
        client = genai.Client(api_key=api_key)
        response = client.models.generate_content(
            model=os.getenv("GEMINI_MODEL", "gemini-2.0-flash"),
            contents=prompt
        )
        return response.text
    except Exception as e:
        logger.warning("Gemini request failed, using fallback logic: %s", e)
        return None


def generate_text(prompt: str) -> Optional[str]:
    provider = os.getenv("AI_PROVIDER", "ollama").lower()
    if provider == "gemini":
        return query_gemini(prompt)
    return query_ollama(prompt)


def _extract_json(text: Optional[str], pattern: str) -> Any:
    if not text:
        return None
    match = re.search(pattern, text, re.DOTALL)
    if not match:
        return None
    try:
        return json.loads(match.group(0))
    except ValueError:
        logger.warning("Could not parse JSON from model answer")
        return None


def generate_market_insights() -> Dict[str, Any]:
    """Five market insights, flagged with ``fallback`` when not model generated"""
    insights = _extract_json(generate_text(MARKET_INSIGHTS_PROMPT), r"\[.*\]")
    if isinstance(insights, list) and insights and all(isinstance(i, str) for i in insights):
        return {"insights": insights, "fallback": False}
    return {"insights": list(FALLBACK_INSIGHTS), "fallback": True}


def parse_footprint_input(data: Dict[str, Any]) -> Dict[str, Any]:
    """Validate calculator input; raises ValueError naming the bad field"""
    missing = [field for field in FOOTPRINT_FIELDS if data.get(field) in (None, "")]
    if missing:
        raise ValueError(f"{', '.join(missing)} required")
    parsed = {"industryType": str(data["industryType"]).strip().lower()}
    for field in FOOTPRINT_FIELDS:
        if field == "industryType":
            continue
        try:
            value = float(data[field])
        except (TypeError, ValueError):
            raise ValueError(f"{field} must be a number")
        if value < 0:
            raise ValueError(f"{field} must not be negative")
        parsed[field] = value
    return parsed


def fallback_footprint(data: Dict[str, Any]) -> Dict[str, Any]:
    """Rule-based footprint in tCO2e per year"""
    industry = data["industryType"]
    multiplier = INDUSTRY_MULTIPLIERS.get(industry, DEFAULT_MULTIPLIER)
    employee_emissions = data["employeeCount"] * multiplier
    energy_emissions = (data["energyConsumption"] * GRID_KG_PER_KWH) / 1000
    travel_emissions = (data["businessTravelDistance"] * TRAVEL_KG_PER_KM) / 1000

    total = employee_emissions + energy_emissions + travel_emissions
    if data["annualRevenue"] > 1_000_000:
        total *= math.log10(data["annualRevenue"] / 1_000_000) * 0.1 + 1

    return {
        "totalFootprint": round(total, 2),
        "breakdown": {
            "employeeBasedEmissions": employee_emissions,
            "energyEmissions": energy_emissions,
            "travelEmissions": travel_emissions,
            "industryMultiplier": multiplier
        },
        "recommendedCredits": math.ceil(total * 1.1),
        "insights": [
            f"Your {industry} business has a baseline of {multiplier} tCO2e per employee",
            "Consider energy efficiency improvements to reduce your footprint",
            "Nature-based carbon credits are recommended for your industry"
        ],
        "fallback": True
    }


def _valid_footprint(result: Any) -> bool:
    if not isinstance(result, dict):
        return False
    breakdown = result.get("breakdown")
    return (
        isinstance(result.get("totalFootprint"), (int, float))
        and isinstance(breakdown, dict)
        and isinstance(result.get("recommendedCredits"), (int, float))
        and isinstance(result.get("insights"), list)
    )


def calculate_carbon_footprint(data: Dict[str, Any]) -> Dict[str, Any]:
    """Estimate a company's footprint with the model, or by rule when it cannot"""
    answer = _extract_json(generate_text(FOOTPRINT_PROMPT.format(**data)), r"\{.*\}")
    if _valid_footprint(answer):
        answer["fallback"] = False
        return answer
    return fallback_footprint(data)


def classify_product(product_name: str, description: str) -> str:
    """Put a product in a sustainability category by keyword"""
    text = f"{product_name} {description}".lower()
    if any(word in text for word in ("carbon credit", "carbon offset", "verified")):
        return "Verified Carbon Offset"
    if any(word in text for word in ("recycled", "reclaimed", "upcycled")):
        return "Recycled Material"
    if any(word in text for word in ("solar", "wind", "renewable", "clean energy")):
        return "Renewable Energy Product"
    return "Sustainable Product"


def summarize_sustainability(description: str, limit: int = 200) -> str:
    """Shorten a description to the whole sentences that fit in ``limit`` characters"""
    if not description or len(description) <= limit:
        return description

    sentences = re.findall(r"[^.!?]+[.!?]+", description) or [description]
    summary = ""
    for sentence in sentences:
        if len(summary) + len(sentence) > limit:
            break
        summary += sentence

    if not summary:
        summary = description[:limit - 3] + "..."
    return summary.strip()


def summarize_market(listings: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Average price and available volume per project type"""
    by_type: Dict[str, Dict[str, float]] = {}
    for listing in listings:
        bucket = by_type.setdefault(listing.get("type") or "unknown", {"volume": 0, "value": 0.0})
        bucket["volume"] += listing.get("availableQuantity") or 0
        bucket["value"] += (listing.get("availableQuantity") or 0) * (listing.get("pricePerCredit") or 0)
    return {
        project_type: {
            "availableCredits": bucket["volume"],
            "averagePrice": round(bucket["value"] / bucket["volume"], 2) if bucket["volume"] else None
        }
        for project_type, bucket in by_type.items()
    }
