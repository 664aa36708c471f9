import httpx
import pytest

from trip_assistant.errors import SkillError, TransientSkillError
from trip_assistant.models import Duration, IntentResult, TripRequirements
from trip_assistant.skills import BudgetEstimateSkill, SkillRequest, WeatherForecastSkill, should_dispatch
from trip_assistant.skills.weather import FORECAST_URL, GEOCODE_URL, aggregate_daily

GEOCODE_HIT = [{"display_name": "Lisboa, Portugal", "lat": "38.7077", "lon": "-9.1365"}]
TIMESERIES = [
    {"time": "2026-05-01T00:00:00Z", "data": {"instant": {"details": {"air_temperature": 14.2}}}},
    {"time": "2026-05-01T12:00:00Z", "data": {"instant": {"details": {"air_temperature": 21.5}}}},
    {"time": "2026-05-02T06:00:00Z", "data": {"instant": {"details": {"air_temperature": 12.0}}}},
    {"time": "2026-05-02T09:00:00Z", "data": {"instant": {"details": {}}}},
]


def request_for(intent="travel_planning", **requirements):
    return SkillRequest(
        participant_id="p1",
        session_id="s1",
        text="",
        intent=IntentResult(type=intent, family="planning", confidence=0.8),
        requirements=TripRequirements(**requirements),
    )


def weather_skill(handler, sleeps=None):
    async def fake_sleep(seconds):
        if sleeps is not None:
            sleeps.append(seconds)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WeatherForecastSkill(client, geocode_interval=0.0, sleep=fake_sleep)


def routed(geocode=None, forecast=None):
    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url.startswith(GEOCODE_URL):
            return geocode or httpx.Response(200, json=GEOCODE_HIT)
        if url.startswith(FORECAST_URL):
            return forecast or httpx.Response(200, json={"properties": {"timeseries": TIMESERIES}})
        return httpx.Response(404)
    return handler


def test_aggregate_daily_keeps_min_and_max_per_day():
    days = aggregate_daily(TIMESERIES)

    assert [(d.date_utc, d.tmin_c, d.tmax_c) for d in days] == [
        ("2026-05-01", 14.2, 21.5),
        ("2026-05-02", 12.0, 12.0),
    ]


def test_aggregate_daily_limits_days():
    series = [
        {"time": f"2026-05-{day:02d}T12:00:00Z", "data": {"instant": {"details": {"air_temperature": day}}}}
        for day in range(1, 11)
    ]

    assert len(aggregate_daily(series)) == 7


@pytest.mark.asyncio
async def test_weather_forecast_for_destination():
    skill = weather_skill(routed())

    data = await skill.run(request_for(destination="Lisbon"))

    assert data["query"] == "Lisbon"
    assert data["place"] == "Lisboa, Portugal"
    assert data["lat"] == pytest.approx(38.7077)
    assert len(data["days"]) == 2
    await skill.aclose()


@pytest.mark.asyncio
async def test_unknown_place_is_not_retryable():
    skill = weather_skill(routed(geocode=httpx.Response(200, json=[])))

    with pytest.raises(SkillError) as excinfo:
        await skill.run(request_for(destination="Atlantis"))

    assert not isinstance(excinfo.value, TransientSkillError)
    assert "Atlantis" in str(excinfo.value)


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [429, 500, 503])
async def test_server_errors_are_transient(status):
    skill = weather_skill(routed(forecast=httpx.Response(status)))

    with pytest.raises(TransientSkillError):
        await skill.run(request_for(destination="Lisbon"))


@pytest.mark.asyncio
async def test_client_errors_are_permanent():
    skill = weather_skill(routed(geocode=httpx.Response(403)))

    with pytest.raises(SkillError) as excinfo:
        await skill.run(request_for(destination="Lisbon"))

    assert not isinstance(excinfo.value, TransientSkillError)


@pytest.mark.asyncio
async def test_connection_failure_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    skill = weather_skill(handler)

    with pytest.raises(TransientSkillError):
        await skill.run(request_for(destination="Lisbon"))


@pytest.mark.asyncio
async def test_geocoding_is_throttled():
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    client = httpx.AsyncClient(transport=httpx.MockTransport(routed()))
    skill = WeatherForecastSkill(client, geocode_interval=5.0, sleep=fake_sleep)

    await skill.run(request_for(destination="Lisbon"))
    await skill.run(request_for(destination="Porto"))

    assert len(sleeps) == 1
    assert 4.0 < sleeps[0] <= 5.0


def test_weather_needs_a_destination():
    skill = WeatherForecastSkill(httpx.AsyncClient(transport=httpx.MockTransport(routed())))

    assert should_dispatch(skill, request_for(destination="Lisbon"))
    assert not should_dispatch(skill, request_for())
    assert not should_dispatch(skill, request_for(intent="budget_analysis", destination="Lisbon"))


@pytest.mark.asyncio
async def test_budget_breakdown():
    skill = BudgetEstimateSkill(currency="EUR")
    request = request_for(
        intent="budget_analysis",
        destination="Lisbon",
        budget=1400,
        duration=Duration(value=1, unit="weeks"),
    )

    data = await skill.run(request)

    assert should_dispatch(skill, request)
    assert data["days"] == 7
    assert data["daily"] == 200.0
    assert data["breakdown"] == {"lodging": 80.0, "food": 50.0, "transport": 30.0, "activities": 40.0}
    assert data["currency"] == "EUR"


def test_budget_skill_declines_without_duration():
    skill = BudgetEstimateSkill()

    assert not should_dispatch(skill, request_for(intent="budget_analysis", budget=900))
