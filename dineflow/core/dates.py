"""
Utilidades de fechas para ciclos de facturación

Todas las fechas se manejan en UTC naive (así las devuelve sqlite y postgres
con DateTime sin zona).
"""
from calendar import monthrange
from datetime import date, datetime, time, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def add_months(value: datetime, months: int) -> datetime:
    """Suma meses respetando el largo de cada mes: 31-ene + 1 mes = 29-feb (bisiesto)"""
    total_months = value.month - 1 + months
    year = value.year + total_months // 12
    month = total_months % 12 + 1
    day = min(value.day, monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def add_billing_cycle(value: datetime, billing_cycle: str) -> datetime:
    """Avanza un ciclo: MONTHLY = +1 mes, YEARLY = +1 año (29-feb -> 28-feb)"""
    cycle = getattr(billing_cycle, "value", billing_cycle)
    if cycle == "MONTHLY":
        return add_months(value, 1)
    if cycle == "YEARLY":
        return add_months(value, 12)
    raise ValueError(f"Ciclo de facturación no soportado: {billing_cycle}")


def end_of_day(day: date) -> datetime:
    """Primer instante del día siguiente; 'vence hoy' = fecha < end_of_day(hoy)"""
    return datetime.combine(day + timedelta(days=1), time.min)
