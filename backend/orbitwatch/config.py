from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "OrbitWatch API"
    database_url: str = "sqlite:///./orbitwatch.db"
    log_level: str = "INFO"
    dashboard_url: str | None = None
    background_tasks_enabled: bool = True

    # TLE ingest
    tle_source_url: str = "https://celestrak.org/NORAD/elements/gp.php?GROUP=active&FORMAT=tle"
    ingestion_interval_hours: int = 6
    tle_fetch_timeout_seconds: float = 30.0
    tle_fetch_max_retries: int = 3

    # Conjunction screening
    screening_window_hours: float = 72.0
    screening_step_seconds: float = 300.0
    screening_threshold_km: float = 10.0
    screening_interval_minutes: int = 60
    screening_deadline_seconds: float = 900.0
    screening_workers: int = 0
    screening_chunk_size: int = 512
    screening_queue_size: int = 256
    coplanar_tolerance_deg: float = 3.0

    # Risk
    hard_body_radius_m: float = 5.0
    congestion_band_width_km: float = 10.0

    # Re-entry
    reentry_perigee_threshold_km: float = 500.0
    reentry_lookahead_hours: float = 24.0
    reentry_mass_to_area_bound: float = 100.0
    reentry_rapid_decay_km_per_day: float = 2.0
    reentry_interval_minutes: int = 60

    # Alert lifecycle
    escalation_dwell_critical_minutes: float = 5.0
    escalation_dwell_high_minutes: float = 15.0
    escalation_dwell_moderate_minutes: float = 60.0
    escalation_max_level: int = 3
    escalation_check_interval_seconds: float = 60.0
    alert_shards: int = 16

    # Notification fan-out
    breaker_failure_threshold: int = 5
    breaker_open_seconds: float = 60.0
    breaker_max_open_seconds: float = 600.0
    webhook_timeout_seconds: float = 10.0
    webhook_max_attempts: int = 3
    webhook_base_backoff_seconds: float = 1.0
    pagerduty_routing_key: str | None = None

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
