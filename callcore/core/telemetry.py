"""OpenTelemetry 계측 설정

호스트 애플리케이션이 setup_telemetry()를 호출하면 OTLP로 메트릭을 내보낸다.
호출하지 않으면 get_call_metrics()가 None을 반환하고 세션 매니저는 기록을 건너뛴다.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.semconv.resource import ResourceAttributes

logger = logging.getLogger(__name__)


def init_telemetry(
    service_name: str,
    service_version: str = "0.1.0",
    otlp_endpoint: str | None = None,
) -> tuple[trace.Tracer, metrics.Meter]:
    """OpenTelemetry 초기화

    Args:
        service_name: 서비스 이름 (예: "callcore-desktop")
        service_version: 서비스 버전
        otlp_endpoint: OTLP 수신 엔드포인트 (기본값: OTEL_EXPORTER_OTLP_ENDPOINT 환경변수)

    Returns:
        (Tracer, Meter) 튜플
    """
    endpoint = otlp_endpoint or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317")

    resource = Resource.create(
        {
            ResourceAttributes.SERVICE_NAME: service_name,
            ResourceAttributes.SERVICE_VERSION: service_version,
            ResourceAttributes.DEPLOYMENT_ENVIRONMENT: os.getenv("APP_ENV", "development"),
        }
    )

    tracer_provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(tracer_provider)

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=endpoint, insecure=True),
        export_interval_millis=10000,  # 10초마다 export
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)

    tracer = trace.get_tracer(service_name, service_version)
    meter = metrics.get_meter(service_name, service_version)

    logger.info(
        "Telemetry initialized: service=%s, endpoint=%s",
        service_name,
        endpoint,
    )

    return tracer, meter


def instrument_common() -> None:
    """공통 라이브러리 자동 계측"""
    try:
        from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

        HTTPXClientInstrumentor().instrument()
        logger.info("HTTPX instrumentation enabled")
    except Exception as e:
        logger.warning("Failed to instrument HTTPX: %s", e)


# ===========================================
# 통화 메트릭
# ===========================================


class CallMetrics:
    """통화/컨퍼런스 커스텀 메트릭"""

    def __init__(self, meter: metrics.Meter):
        self.meter = meter
        self._init_call_metrics()
        self._init_conference_metrics()
        self._init_signaling_metrics()

    def _init_call_metrics(self) -> None:
        """1:1 통화 메트릭"""
        self.calls_started_total = self.meter.create_counter(
            name="callcore_calls_started_total",
            description="시작된 1:1 통화 수 (direction=outgoing/incoming)",
        )
        self.calls_ended_total = self.meter.create_counter(
            name="callcore_calls_ended_total",
            description="종료된 1:1 통화 수 (reason별)",
        )
        self.call_duration = self.meter.create_histogram(
            name="callcore_call_duration_seconds",
            description="active 이후 통화 시간",
            unit="s",
        )

    def _init_conference_metrics(self) -> None:
        """컨퍼런스 메트릭"""
        self.conference_joins_total = self.meter.create_counter(
            name="callcore_conference_joins_total",
            description="컨퍼런스 입장 수 (mode=create/join)",
        )
        self.conference_peer_failures_total = self.meter.create_counter(
            name="callcore_conference_peer_failures_total",
            description="피어 단위 협상/연결 실패 수",
        )

    def _init_signaling_metrics(self) -> None:
        """시그널링 / ICE 설정 메트릭"""
        self.signaling_dropped_total = self.meter.create_counter(
            name="callcore_signaling_dropped_total",
            description="전송 실패로 버려진 시그널링 메시지 수",
        )
        self.ice_config_fallback_total = self.meter.create_counter(
            name="callcore_ice_config_fallback_total",
            description="ICE 설정 조회 실패로 공개 STUN을 사용한 횟수",
        )


# ===========================================
# 싱글톤 인스턴스 및 접근자
# ===========================================

_tracer: trace.Tracer | None = None
_meter: metrics.Meter | None = None
_call_metrics: CallMetrics | None = None
_initialized: bool = False


def is_telemetry_initialized() -> bool:
    """Telemetry 초기화 여부 확인"""
    return _initialized


def get_tracer() -> trace.Tracer:
    """Tracer 인스턴스 반환 (초기화 안 된 경우 noop tracer 반환)"""
    if _tracer is None:
        return trace.get_tracer("callcore-noop")
    return _tracer


def get_call_metrics() -> CallMetrics | None:
    """통화 메트릭 인스턴스 반환 (초기화 안 된 경우 None)"""
    return _call_metrics


def setup_telemetry(service_name: str, service_version: str = "0.1.0") -> None:
    """전역 telemetry 설정 (애플리케이션 시작 시 호출)"""
    global _tracer, _meter, _call_metrics, _initialized

    if _initialized:
        logger.warning("Telemetry already initialized, skipping")
        return

    _tracer, _meter = init_telemetry(service_name, service_version)
    _call_metrics = CallMetrics(_meter)
    instrument_common()
    _initialized = True
