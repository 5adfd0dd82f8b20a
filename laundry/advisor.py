"""Best day to hang laundry outside, from the 5-day weather forecast.

An OpenAI chat model rates every day with a fixed formula and writes a short
justification. Without an API key the same formula is applied locally and
the justification is left generic.

    score = (100 - rain probability %) * 2 + (100 - humidity %)
"""

import json
import logging
import os
from datetime import datetime, time, timedelta
from pathlib import Path
from zoneinfo import ZoneInfo

from openai import OpenAI, OpenAIError

import config
from weather.client import WeatherClient

logger = logging.getLogger(__name__)

RATING_THRESHOLDS = [(210, "excellent"), (180, "good"), (150, "fair")]
DEFAULT_TIME_WINDOW = "10:00-16:00"

_SYSTEM_PROMPT = """You are a weather expert. Rate EVERY day for hanging laundry outside
using this strict scoring system.

SCORE = (100 - rain probability %) * 2 + (100 - humidity %) * 1
The day with the HIGHEST score is the best day. Rain matters most, then
humidity; temperature only breaks ties. Only 06:00-18:00 is relevant.

Rating by score:
- "excellent": score >= 210
- "good": 180-209
- "fair": 150-179
- "poor": < 150

Write all free text in German. Reply ONLY with a JSON object of this form:
{
  "best_day": {"date": "DD.MM", "day_name": "Wochentag", "time_window": "08:00-16:00"},
  "reasoning": "1-2 sentences why this day is best",
  "weather_summary": {"temperature": "min-max C", "humidity": "x %", "rain": "x %"},
  "all_days": [
    {"day_name": "Wochentag", "date": "DD.MM", "rating": "excellent|good|fair|poor",
     "temperature": "min-max C", "humidity": 65, "rain_probability": 20,
     "reason": "one sentence"}
  ]
}"""


class LaundryForecastError(RuntimeError):
    """The forecast could not be generated."""


def score_day(rain_probability: float, humidity: float) -> float:
    return (100 - rain_probability) * 2 + (100 - humidity)


def rate_score(score: float) -> str:
    for threshold, rating in RATING_THRESHOLDS:
        if score >= threshold:
            return rating
    return "poor"


def prepare_forecast_data(weather: dict) -> list[dict]:
    return [
        {
            "day": d["day_name"],
            "date": d["date"],
            "temp_min": d["temp_min"],
            "temp_max": d["temp_max"],
            "humidity": d["humidity"],
            "rain_probability": d["pop"],
            "wind_speed": d["wind_speed"],
            "weather": d["weather_description"],
        }
        for d in weather.get("daily", [])
    ]


def rank_days(days: list[dict]) -> dict:
    """Apply the scoring formula locally. Ties go to the lower humidity, then the earlier day."""
    if not days:
        raise LaundryForecastError("No forecast days to rate")

    all_days = []
    for d in days:
        score = score_day(d["rain_probability"], d["humidity"])
        all_days.append({
            "day_name": d["day"],
            "date": d["date"],
            "rating": rate_score(score),
            "temperature": f"{d['temp_min']}-{d['temp_max']} °C",
            "humidity": d["humidity"],
            "rain_probability": d["rain_probability"],
            "score": score,
            "reason": f"{d['rain_probability']}% Regen, {d['humidity']}% Luftfeuchtigkeit",
        })

    best_idx = max(
        range(len(all_days)),
        key=lambda i: (all_days[i]["score"], -all_days[i]["humidity"], -i),
    )
    best = all_days[best_idx]
    return {
        "best_day": {
            "date": best["date"],
            "day_name": best["day_name"],
            "time_window": DEFAULT_TIME_WINDOW,
        },
        "reasoning": (
            f"{best['day_name']} hat mit {best['rain_probability']}% Regenrisiko und "
            f"{best['humidity']}% Luftfeuchtigkeit die besten Trocknungsbedingungen."
        ),
        "weather_summary": {
            "temperature": best["temperature"],
            "humidity": f"{best['humidity']} %",
            "rain": f"{best['rain_probability']} %",
        },
        "all_days": all_days,
    }


class LaundryAdvisor:
    def __init__(
        self,
        weather: WeatherClient,
        path: str | Path | None = None,
        client: OpenAI | None = None,
    ):
        self.weather = weather
        self.path = Path(path or config.system.laundry_forecast_path)
        self.model = config.openai.model
        self.temperature = config.openai.temperature
        self.tz = ZoneInfo(config.system.timezone)
        if client is None and config.openai.api_key:
            client = OpenAI(api_key=config.openai.api_key)
        self.client = client

    def _ask_model(self, days: list[dict]) -> dict:
        user_prompt = (
            "WEATHER DATA for the next days:\n"
            f"{json.dumps(days, indent=2, ensure_ascii=False)}\n\n"
            "1. Compute the score for EVERY day.\n"
            "2. Pick the day with the HIGHEST score as best_day; with equal rain "
            "probability the lower humidity wins.\n"
            "3. Return ALL days sorted by date (not by score).\n"
            "4. Assign the rating from the score."
        )
        try:
            completion = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": _SYSTEM_PROMPT},
                    {"role": "user", "content": user_prompt},
                ],
                response_format={"type": "json_object"},
                temperature=self.temperature,
            )
        except OpenAIError as e:
            raise LaundryForecastError(f"OpenAI API call failed: {e}") from e

        text = completion.choices[0].message.content if completion.choices else None
        if not text:
            raise LaundryForecastError("Empty response from OpenAI")
        logger.debug("Raw model response: %s", text)
        try:
            forecast = json.loads(text)
        except json.JSONDecodeError as e:
            raise LaundryForecastError("Failed to parse model response") from e
        if not isinstance(forecast, dict) or "best_day" not in forecast:
            raise LaundryForecastError("Model response is missing best_day")
        return forecast

    def generate(self, now: datetime | None = None) -> dict:
        """Build a new forecast from current weather and store it."""
        now = now or datetime.now(self.tz)
        days = prepare_forecast_data(self.weather.get_weather())
        if not days:
            raise LaundryForecastError("Weather forecast has no daily data")

        if self.client is not None:
            logger.info("Asking %s for laundry forecast (%d days)", self.model, len(days))
            forecast = self._ask_model(days)
        else:
            logger.warning("OPENAI_API_KEY not set; rating laundry days locally")
            forecast = rank_days(days)

        hour, minute = (int(x) for x in config.system.laundry_generate_at.split(":"))
        next_update = datetime.combine(
            now.date() + timedelta(days=1), time(hour, minute), tzinfo=now.tzinfo
        )
        forecast["generated_at"] = now.isoformat()
        forecast["next_update"] = next_update.isoformat()
        self.save(forecast)
        logger.info("Laundry forecast: best day %s", forecast["best_day"].get("date"))
        return forecast

    def save(self, forecast: dict):
        # Atomic write
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(forecast, f, indent=2, ensure_ascii=False)
        os.replace(str(tmp_path), str(self.path))

    def load(self) -> dict | None:
        if not self.path.exists():
            return None
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)
