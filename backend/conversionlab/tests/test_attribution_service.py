"""Attribution service tests

WHAT: Touchpoint ordering and dedup, journey reconstruction, per-model credit,
      model comparison report and channel aggregation
WHY: Stored credit feeds every channel report; it must sum to the conversion
     value and be replaced (not duplicated) when a model is recomputed
REFERENCES:
    - conversionlab/services/attribution_service.py
    - conversionlab/services/attribution_models.py
"""

import uuid

import pytest

from conversionlab.event_schema import ConversionEvent, utcnow
from conversionlab.exceptions import EmptyJourneyError, NotFoundError, ValidationError, WriteConflictError
from conversionlab.models import Conversion, GoalTypeEnum, Touchpoint, TouchpointAttribution
from conversionlab.services.attribution_models import parse_model
from conversionlab.services.attribution_service import AttributionService
from conversionlab.services.conversion_service import ConversionService


@pytest.fixture
def service(test_db_session, settings):
    return AttributionService(test_db_session, settings)


@pytest.fixture
def convert(test_db_session, purchase_goal):
    """Track a conversion for session s1 on short code promo."""
    def _convert(conversion_id="order-1", session_id="s1", value=90.0, when=None):
        conversion, _ = ConversionService(test_db_session).track_conversion(ConversionEvent(
            conversion_id=conversion_id,
            goal_id=purchase_goal.id,
            short_code="promo",
            session_id=session_id,
            value=value,
            timestamp=when,
        ))
        return conversion

    return _convert


@pytest.fixture
def three_touch_journey(service, make_click, days_ago, convert):
    """google/cpc, then direct, then google/cpc, all within the last 3 days."""
    service.record_touchpoint(make_click("s1", when=days_ago(3), source="google", medium="cpc"))
    service.record_touchpoint(make_click("s1", when=days_ago(2)))
    service.record_touchpoint(make_click("s1", when=days_ago(1), source="google", medium="cpc"))
    return convert()


# ============================================================================
# Touchpoints
# ============================================================================

class TestRecordTouchpoint:

    def test_orders_are_sequential_per_session(self, service, make_click, days_ago):
        orders = [service.record_touchpoint(make_click("s1", when=days_ago(3 - i))).touchpoint_order for i in range(3)]
        other = service.record_touchpoint(make_click("s2"))

        assert orders == [1, 2, 3]
        assert other.touchpoint_order == 1

    def test_campaign_fields_stored(self, service, make_click):
        tp = service.record_touchpoint(make_click("s1", source="newsletter", medium="email"))

        assert tp.campaign_source == "newsletter"
        assert tp.campaign_medium == "email"
        assert tp.short_code == "promo"

    def test_replayed_event_id_returns_stored_touchpoint(self, service, make_click, test_db_session):
        first = service.record_touchpoint(make_click("s1", event_id="evt-1"))
        again = service.record_touchpoint(make_click("s1", event_id="evt-1"))

        assert again.id == first.id
        assert test_db_session.query(Touchpoint).count() == 1

    def test_order_conflict_is_retried(self, service, make_click):
        service.record_touchpoint(make_click("s1"))

        # A stale read hands out order 1 again before the next attempt sees the row
        proposals = iter([1, 2])
        service._next_order = lambda session_id: next(proposals)

        tp = service.record_touchpoint(make_click("s1"))
        assert tp.touchpoint_order == 2

    def test_gives_up_after_retries(self, service, make_click, settings):
        service.record_touchpoint(make_click("s1"))
        service._next_order = lambda session_id: 1

        with pytest.raises(WriteConflictError):
            service.record_touchpoint(make_click("s1"))


# ============================================================================
# Journeys
# ============================================================================

class TestConversionJourney:

    def test_journey_is_window_bounded_and_ordered(self, service, make_click, days_ago, convert):
        service.record_touchpoint(make_click("s1", when=days_ago(45), source="old"))
        service.record_touchpoint(make_click("s1", when=days_ago(5), source="google"))
        service.record_touchpoint(make_click("s1", when=days_ago(1), source="email"))
        service.record_touchpoint(make_click("s2", when=days_ago(1), source="other-session"))
        conversion = convert()

        journey = service.get_conversion_journey(conversion.conversion_id)

        assert [tp.campaign_source for tp in journey.touchpoints] == ["google", "email"]
        assert journey.attribution_window == 30
        assert journey.truncated == 0
        assert 5 * 24 * 60 - 5 <= journey.journey_minutes <= 5 * 24 * 60 + 5

    def test_touchpoints_after_conversion_excluded(self, service, make_click, days_ago, convert):
        service.record_touchpoint(make_click("s1", when=days_ago(2), source="before"))
        conversion = convert(when=days_ago(1))
        service.record_touchpoint(make_click("s1", source="after"))

        journey = service.get_conversion_journey(conversion.conversion_id)
        assert [tp.campaign_source for tp in journey.touchpoints] == ["before"]

    def test_cap_keeps_most_recent(self, test_db_session, settings, make_click, days_ago, convert):
        settings.MAX_JOURNEY_TOUCHPOINTS = 3
        service = AttributionService(test_db_session, settings)
        for i in range(5):
            service.record_touchpoint(make_click("s1", when=days_ago(5 - i)))
        conversion = convert()

        journey = service.get_conversion_journey(conversion.conversion_id)

        assert [tp.touchpoint_order for tp in journey.touchpoints] == [3, 4, 5]
        assert journey.truncated == 2

    def test_unknown_conversion(self, service):
        with pytest.raises(NotFoundError):
            service.get_conversion_journey("missing")

    def test_scoped_to_goal_owner(self, service, three_touch_journey, purchase_goal):
        journey = service.get_conversion_journey("order-1", owner_id=purchase_goal.owner_id)
        assert len(journey.touchpoints) == 3

        with pytest.raises(NotFoundError):
            service.get_conversion_journey("order-1", owner_id="owner-999")

    def test_missing_goal_is_not_found(self, service, make_click, test_db_session):
        service.record_touchpoint(make_click("s1"))
        test_db_session.add(Conversion(
            conversion_id="orphan-1",
            goal_id=uuid.uuid4(),
            short_code="promo",
            session_id="s1",
            conversion_type=GoalTypeEnum.purchase,
            conversion_value=10,
            conversion_time=utcnow(),
        ))
        test_db_session.commit()

        with pytest.raises(NotFoundError) as exc_info:
            service.get_conversion_journey("orphan-1")
        assert exc_info.value.entity == "conversion_goal"


# ============================================================================
# Attribution
# ============================================================================

class TestCalculateAttribution:

    def test_position_based_split(self, service, three_touch_journey, test_db_session):
        credits = service.calculate_attribution(three_touch_journey.conversion_id, "position_based")

        assert [c.attribution_value for c in credits] == pytest.approx([36.0, 18.0, 36.0])
        assert [c.weight for c in credits] == pytest.approx([0.4, 0.2, 0.4])
        assert sum(c.attribution_value for c in credits) == pytest.approx(90.0)
        assert [c.source for c in credits] == ["google", "Direct", "google"]
        assert [c.medium for c in credits] == ["cpc", "None", "cpc"]

        rows = test_db_session.query(TouchpointAttribution).all()
        assert len(rows) == 3
        assert {r.conversion_id for r in rows} == {"order-1"}
        linked = test_db_session.query(Touchpoint).filter(Touchpoint.conversion_id == "order-1").count()
        assert linked == 3

    @pytest.mark.parametrize("model, expected", [
        ("first_touch", [90.0, 0.0, 0.0]),
        ("last_touch", [0.0, 0.0, 90.0]),
        ("linear", [30.0, 30.0, 30.0]),
        ("data_driven", [30.0, 30.0, 30.0]),
    ])
    def test_models(self, service, three_touch_journey, model, expected):
        credits = service.calculate_attribution(three_touch_journey.conversion_id, model)
        assert [c.attribution_value for c in credits] == pytest.approx(expected)

    def test_time_decay_favors_recent_touches(self, service, make_click, days_ago, convert):
        service.record_touchpoint(make_click("s1", when=days_ago(14)))
        service.record_touchpoint(make_click("s1", when=days_ago(7)))
        service.record_touchpoint(make_click("s1", when=days_ago(0, hours=0)))
        conversion = convert()

        credits = service.calculate_attribution(conversion.conversion_id, "time_decay")
        weights = [c.weight for c in credits]

        # Half-life of 7 days: 14d, 7d and ~0d old touches weigh 1:2:4
        assert weights == pytest.approx([1 / 7, 2 / 7, 4 / 7], rel=1e-3)
        assert sum(c.attribution_value for c in credits) == pytest.approx(90.0)

    def test_recalculating_replaces_rows(self, service, three_touch_journey, test_db_session):
        service.calculate_attribution(three_touch_journey.conversion_id, "linear")
        service.calculate_attribution(three_touch_journey.conversion_id, "linear")
        service.calculate_attribution(three_touch_journey.conversion_id, "first_touch")

        assert test_db_session.query(TouchpointAttribution).filter_by(attribution_model="linear").count() == 3
        assert test_db_session.query(TouchpointAttribution).count() == 6

    def test_injected_data_driven_strategy(self, test_db_session, settings, three_touch_journey):
        service = AttributionService(
            test_db_session, settings, data_driven=lambda times, converted_at: [0.0, 1.0, 3.0]
        )

        credits = service.calculate_attribution(three_touch_journey.conversion_id, "data_driven")
        assert [c.attribution_value for c in credits] == pytest.approx([0.0, 22.5, 67.5])

    def test_empty_journey(self, service, convert):
        conversion = convert()
        with pytest.raises(EmptyJourneyError):
            service.calculate_attribution(conversion.conversion_id, "linear")

    def test_unknown_model(self, service, three_touch_journey):
        with pytest.raises(ValidationError):
            service.calculate_attribution(three_touch_journey.conversion_id, "u_shaped")

    def test_claimed_touchpoints_stay_with_their_conversion(self, service, make_click, days_ago, convert, test_db_session):
        service.record_touchpoint(make_click("s1", when=days_ago(3), source="google"))
        service.record_touchpoint(make_click("s1", when=days_ago(2), source="email"))
        convert("order-a", value=100.0, when=days_ago(1))
        convert("order-b", value=50.0)

        service.calculate_attribution("order-a", "linear")
        with pytest.raises(EmptyJourneyError):
            service.calculate_attribution("order-b", "linear")
        service.calculate_attribution("order-a", "linear")

        rows = test_db_session.query(TouchpointAttribution).all()
        assert {r.conversion_id for r in rows} == {"order-a"}
        assert sum(float(r.attribution_value) for r in rows) == pytest.approx(100.0)

        # A later touch belongs to the next conversion
        service.record_touchpoint(make_click("s1", when=days_ago(0, hours=1), source="retarget"))
        credits = service.calculate_attribution("order-b", "linear")
        assert [c.source for c in credits] == ["retarget"]
        assert credits[0].attribution_value == pytest.approx(50.0)

    def test_stale_journey_cannot_take_claimed_touchpoints(self, service, make_click, days_ago, convert, test_db_session):
        service.record_touchpoint(make_click("s1", when=days_ago(2)))
        convert("order-a", when=days_ago(1))
        convert("order-b")
        stale = service.get_conversion_journey("order-b")

        service.calculate_attribution("order-a", "linear")

        with pytest.raises(WriteConflictError):
            service._calculate_for_journey(stale, parse_model("linear"))
        rows = test_db_session.query(TouchpointAttribution).all()
        assert [r.conversion_id for r in rows] == ["order-a"]


class TestAttributionReport:

    def test_report_compares_every_model(self, service, three_touch_journey):
        report = service.get_attribution_report(three_touch_journey.conversion_id)

        assert set(report.breakdown) == {
            "first_touch", "last_touch", "linear", "time_decay", "position_based", "data_driven",
        }
        assert all(total == pytest.approx(90.0) for total in report.model_totals.values())
        assert report.total_value == pytest.approx(90.0)
        assert report.recommended_model == "position_based"
        assert report.errors == {}

    def test_report_on_empty_journey_lists_errors(self, service, convert):
        conversion = convert()
        report = service.get_attribution_report(conversion.conversion_id)

        assert report.breakdown == {}
        assert set(report.errors) == {
            "first_touch", "last_touch", "linear", "time_decay", "position_based", "data_driven",
        }
        assert report.recommended_model == "first_touch"


# ============================================================================
# Channels
# ============================================================================

class TestChannelAttribution:

    def test_groups_by_source_and_medium(self, service, three_touch_journey):
        service.calculate_attribution(three_touch_journey.conversion_id, "linear")

        channels = service.get_channel_attribution("promo", 30, "linear")

        assert [c.channel for c in channels] == ["google/cpc", "Direct/None"]
        google, direct = channels
        assert google.attribution_value == pytest.approx(60.0)
        assert google.touchpoints == 2
        assert google.conversions == 1
        assert google.conversion_rate == pytest.approx(50.0)
        assert direct.attribution_value == pytest.approx(30.0)

    def test_only_the_requested_model(self, service, three_touch_journey):
        service.calculate_attribution(three_touch_journey.conversion_id, "linear")
        assert service.get_channel_attribution("promo", 30, "first_touch") == []

    def test_channel_aggregate_matches_grouped_row(self, service, three_touch_journey):
        service.calculate_attribution(three_touch_journey.conversion_id, "position_based")

        assert sorted(service.list_channels("promo", 30, "position_based")) == [
            ("Direct", "None"), ("google", "cpc"),
        ]
        row = service.channel_aggregate("promo", 30, "position_based", "google", "cpc")
        assert row.attribution_value == pytest.approx(72.0)

    @pytest.mark.parametrize("days", [0, 366])
    def test_day_range_validated(self, service, days):
        with pytest.raises(ValidationError):
            service.get_channel_attribution("promo", days, "linear")

    def test_pending_conversions(self, service, three_touch_journey):
        assert service.pending_conversion_ids("promo", 30, "linear") == ["order-1"]

        service.calculate_attribution(three_touch_journey.conversion_id, "linear")

        assert service.pending_conversion_ids("promo", 30, "linear") == []
        assert service.pending_conversion_ids("promo", 30, "time_decay") == ["order-1"]
