import queue

import pytest

from solis_exporter.config import SolisExporterConfig
from solis_exporter.exporter import SolisExporter
from solis_exporter.modbus import CRCError, ModbusExchange, modbus_crc


def make_exporter(**kwargs):
    return SolisExporter(SolisExporterConfig(**kwargs), None)


def exchange(request_hex, response):
    m = ModbusExchange()
    assert m.parse_request(bytes.fromhex(request_hex)) == 0
    if isinstance(response, str):
        response = bytes.fromhex(response)
    assert m.parse_response(response) == 0
    assert m.error is None
    return m


def framed_read_response(data_hex):
    data = bytes.fromhex(data_hex)
    payload = bytes([0x01, 0x04, len(data)]) + data
    return payload + modbus_crc(payload)


def gauge(e, reg):
    return e.metrics[reg].gauge.value


def vec(e, reg, *labels):
    return e.metrics[reg].gauge_vec.labels(*labels).value


def test_defaults_applied():
    e = make_exporter()
    assert e.config.listen == ":3105"
    assert e.config.station == 1


def test_duplicate_counters_initialised_to_zero():
    text = make_exporter().metrics_text()
    assert 'solis_serial_messages_total{source="sniffed"} 0' in text
    assert 'solis_serial_errors_total{error="timeout"} 0' in text
    assert 'solis_serial_errors_total{error="crc_failed"} 0' in text


def test_exporter_33250():
    e = make_exporter()
    m = exchange(
        "010481E20025B9DB",
        "01044A0002095D00EA0000000000000000FFFFFE620000000000000000FFFFFE620000012100000000000000"
        "0000000121000001F90000000000000000000001F9FFAF1387000032880001BAD409A5",
    )
    e.handle_message(m)
    assert gauge(e, 33263) == pytest.approx(-414)
    assert gauge(e, 33271) == pytest.approx(289)
    assert gauge(e, 33279) == pytest.approx(505)
    assert gauge(e, 33281) == pytest.approx(-0.81)
    assert gauge(e, 33282) == pytest.approx(49.99)
    assert vec(e, 33251, "U") == pytest.approx(239.7)
    assert vec(e, 33252, "U") == pytest.approx(2.34)
    assert vec(e, 33283, "import", "all") == pytest.approx(129.36)
    assert vec(e, 33285, "export", "all") == pytest.approx(1133.64)


def test_exporter_33000():
    e = make_exporter()
    serial_hex = b"TESTSERIAL000001".hex()
    data = (
        "31050032003C0001" + serial_hex + "00" * 16 + "00000000"
        + "0016000B000D001300240020000000000CF5000000460000016D0029001B00000CF500000000"
    )
    e.handle_message(exchange("010480E800299820", framed_read_response(data)))
    text = e.metrics_text()
    assert (
        'solis_inverter_info{model="3105",dsp_version="0032",lcd_version="003C",'
        'protocol_version="0001",serial="TESTSERIAL000001"} 1' in text
    )
    assert vec(e, 33029, "yield", "all") == pytest.approx(3317)
    assert vec(e, 33031, "yield", "month") == pytest.approx(70)
    assert vec(e, 33033, "yield", "month-1") == pytest.approx(365)
    assert vec(e, 33035, "yield", "day") == pytest.approx(4.1)
    assert vec(e, 33036, "yield", "day-1") == pytest.approx(2.7)
    assert vec(e, 33037, "yield", "year") == pytest.approx(3317)


def test_inverter_info_reset_keeps_single_series():
    e = make_exporter()
    first = "31050032003C0001" + b"TESTSERIAL000001".hex() + "00" * 16 + "00" * 42
    second = "31050033003C0001" + b"TESTSERIAL000001".hex() + "00" * 16 + "00" * 42
    e.handle_message(exchange("010480E800299820", framed_read_response(first)))
    e.handle_message(exchange("010480E800299820", framed_read_response(second)))
    info_lines = [
        line for line in e.metrics_text().splitlines() if line.startswith("solis_inverter_info{")
    ]
    assert len(info_lines) == 1
    assert 'dsp_version="0033"' in info_lines[0]


def test_exporter_33049():
    e = make_exporter()
    m = exchange(
        "01048119002409EA",
        "010448000E0001000F00000000000000000000000000000000000000000000000000000000000000000000"
        "003100000F3A0000095800000000001400000000FFFFFF9C0009FFF60000000A7C94",
    )
    e.handle_message(m)
    assert vec(e, 33049, "1") == pytest.approx(1.4)
    assert vec(e, 33050, "1") == pytest.approx(0.1)
    assert vec(e, 33051, "2") == pytest.approx(1.5)
    assert gauge(e, 33057) == pytest.approx(0)
    assert vec(e, 33073, "U") == pytest.approx(239.2)
    assert vec(e, 33076, "U") == pytest.approx(2.0)
    assert gauge(e, 33079) == pytest.approx(-100)
    assert gauge(e, 33081) == pytest.approx(655350)
    assert gauge(e, 33083) == pytest.approx(10)


def test_exporter_33091():
    e = make_exporter()
    assert "solis_inverter_temperature" not in e.metrics_text()
    e.handle_message(exchange("010481430005E9E1", "01040A0000003500EF13880003A506"))
    assert gauge(e, 33093) == pytest.approx(23.9)
    assert gauge(e, 33094) == pytest.approx(50.0)
    assert gauge(e, 33095) == 3
    assert "solis_inverter_temperature 23.9" in e.metrics_text()


def test_exporter_33100():
    e = make_exporter()
    m = exchange(
        "0104814C0016982F",
        "01042C00000000000000002AF803E800000000000000000000000000000000000000020000000000000000"
        "00000701F38E",
    )
    e.handle_message(m)
    assert gauge(e, 33121) == 0x0701
    assert vec(e, 33116, "01") == 0
    assert vec(e, 33120, "05") == 0


def test_exporter_33126():
    e = make_exporter()
    m = exchange(
        "0104816600183823",
        "01043000134598095D00EEFFFFFE55002301EA001C00010D2209580014001400631303000602E402E4000000"
        "00012E00000000B2F6",
    )
    e.handle_message(m)
    assert gauge(e, 33132) == 35
    assert gauge(e, 33133) == pytest.approx(49.0)
    assert gauge(e, 33134) == pytest.approx(-2.8)
    assert gauge(e, 33137) == pytest.approx(239.2)
    assert gauge(e, 33138) == pytest.approx(0.2)
    assert gauge(e, 33139) == 20
    assert gauge(e, 33140) == 99
    assert gauge(e, 33141) == pytest.approx(48.67)
    assert gauge(e, 33142) == pytest.approx(0.6)
    assert gauge(e, 33143) == pytest.approx(74.0)
    assert gauge(e, 33144) == pytest.approx(74.0)
    assert gauge(e, 33147) == 302
    assert gauge(e, 33148) == 0


def test_exporter_33161():
    e = make_exporter()
    m = exchange(
        "01048189001409D3",
        "010428000003E0001C00150000047A0022003300000081003000120000046D0000000000000986005E004BC806",
    )
    e.handle_message(m)
    assert vec(e, 33161, "charge", "all") == pytest.approx(992)
    assert vec(e, 33163, "charge", "day") == pytest.approx(2.8)
    assert vec(e, 33164, "charge", "day-1") == pytest.approx(2.1)
    assert vec(e, 33165, "discharge", "all") == pytest.approx(1146)
    assert vec(e, 33169, "import", "all") == pytest.approx(129)
    assert vec(e, 33171, "import", "day") == pytest.approx(4.8)
    assert vec(e, 33173, "export", "all") == pytest.approx(1133)
    assert vec(e, 33177, "load", "all") == pytest.approx(2438)
    assert vec(e, 33179, "load", "day") == pytest.approx(9.4)
    assert vec(e, 33180, "load", "day-1") == pytest.approx(7.5)


def test_exporter_33243():
    e = make_exporter()
    e.handle_message(exchange("010481DB0004A9CE", "0104080000000000000000240D"))
    assert e.messages.labels("injected").value == 1
    assert e.messages.labels("sniffed").value == 0
    assert e.last_message.value > 0


def test_exporter_poll_2900_exception():
    e = make_exporter()
    m = exchange("01040BB7000183C8", "018402C2C1")
    assert m.exception == 2
    e.handle_message(m)
    assert e.last_message.value > 0
    assert e.messages.labels("injected").value == 1


def test_exporter_poll_33000_too_short_for_info():
    e = make_exporter()
    e.handle_message(exchange("010480E80001983E", "01040231056CA3"))
    assert "solis_inverter_info{" not in e.metrics_text()


def test_exporter_poll_33250_holding_register():
    e = make_exporter()
    m = exchange("0103A8010001F5AA", "01030200017984")
    e.handle_message(m)
    assert e.messages.labels("injected").value == 1
    assert "solis_grid" not in e.metrics_text()


def test_error_counted_and_metrics_untouched():
    e = make_exporter()
    e.handle_message(ModbusExchange(sniffed=True, error=CRCError()))
    assert e.errors.labels("crc_failed").value == 1
    assert e.messages.labels("sniffed").value == 1
    assert e.last_message.value == 0


def test_unknown_error_counts_as_decode_failure():
    e = make_exporter()
    e.handle_message(ModbusExchange(error=OSError("device gone")))
    assert e.errors.labels("decode_failed").value == 1


def test_other_station_ignored():
    e = make_exporter(station=2)
    e.handle_message(exchange("010481430005E9E1", "01040A0000003500EF13880003A506"))
    assert "solis_inverter_temperature" not in e.metrics_text()
    assert e.last_message.value > 0


def test_consume_from_queue_until_none():
    q = queue.Queue()
    q.put(exchange("010481430005E9E1", "01040A0000003500EF13880003A506"))
    q.put(None)
    e = SolisExporter(SolisExporterConfig(), q)
    e.consume()
    assert gauge(e, 33095) == 3


def test_consume_from_iterable():
    messages = [ModbusExchange(sniffed=True), ModbusExchange(sniffed=True)]
    e = SolisExporter(SolisExporterConfig(), messages)
    e.consume()
    assert e.messages.labels("sniffed").value == 2


def test_process_collector_optional():
    plain = make_exporter().metrics_text()
    with_process = make_exporter(process_collector=True).metrics_text()
    assert "process_resident_memory_bytes" not in plain
    assert "process_resident_memory_bytes" in with_process


def test_gc_collector_optional():
    assert "python_gc_collections_total" in make_exporter(go_collector=True).metrics_text()
    assert "python_gc_collections_total" not in make_exporter().metrics_text()