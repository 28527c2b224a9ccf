"""
Serializers that validate structured content-analysis responses.
"""
import math

from rest_framework import serializers

INTENTS = ['quote_request', 'information_seeking', 'appointment_booking', 'complaint', 'follow_up', 'other']
PROJECT_TYPES = ['kitchen', 'bathroom', 'whole_home', 'addition', 'flooring', 'roofing', 'windows', 'doors', 'other']
TIMELINES = ['immediate', '1-3_months', '3-6_months', '6+_months', 'unknown']
BUDGET_INDICATORS = ['high', 'medium', 'low', 'unknown']
SENTIMENTS = ['positive', 'neutral', 'negative']
URGENCIES = ['high', 'medium', 'low']


class StrictNumberMixin:
    """Accept only real JSON numbers: no strings, booleans, NaN or infinity."""

    def to_internal_value(self, data):
        if isinstance(data, bool) or not isinstance(data, (int, float)):
            self.fail('invalid')
        if isinstance(data, float) and not math.isfinite(data):
            self.fail('invalid')
        return super().to_internal_value(data)


class StrictIntegerField(StrictNumberMixin, serializers.IntegerField):
    pass


class StrictFloatField(StrictNumberMixin, serializers.FloatField):
    pass


class LowercaseChoiceField(serializers.ChoiceField):
    def to_internal_value(self, data):
        if isinstance(data, str):
            data = data.strip().lower()
        return super().to_internal_value(data)


class ContentAnalysisSerializer(serializers.Serializer):
    intent = LowercaseChoiceField(choices=INTENTS)
    project_type = LowercaseChoiceField(choices=PROJECT_TYPES)
    timeline = LowercaseChoiceField(choices=TIMELINES)
    budget_indicator = LowercaseChoiceField(choices=BUDGET_INDICATORS)
    sentiment = LowercaseChoiceField(choices=SENTIMENTS)
    lead_score = StrictIntegerField(min_value=1, max_value=100)
    urgency = LowercaseChoiceField(choices=URGENCIES)
    appointment_requested = serializers.BooleanField()
    follow_up_required = serializers.BooleanField()
    key_details = serializers.ListField(
        child=serializers.CharField(allow_blank=True),
        required=False,
        default=list,
    )


class SpamAssessmentSerializer(serializers.Serializer):
    spam_likelihood = StrictFloatField(min_value=0, max_value=100)
    confidence = StrictFloatField(min_value=0, max_value=1, required=False)
    indicators = serializers.ListField(
        child=serializers.CharField(allow_blank=True),
        required=False,
        default=list,
    )
    reasoning = serializers.CharField(required=False, allow_blank=True, default='')
