import unittest

from beacon.collector import EventCollector, classify_link, scroll_percent
from beacon.models.event import parse_event
from beacon.platform import ManualScheduler, MemoryStorage
from beacon.privacy import pseudonymize
from beacon.session import SessionTracker


class _BackwardsClock:
    def __init__(self, values):
        self._values = list(values)

    def now_ms(self):
        return self._values.pop(0)


class EventCollectorTestCase(unittest.TestCase):
    def setUp(self):
        self.clock = ManualScheduler(start_ms=1_700_000_000_000)
        self.session = SessionTracker(MemoryStorage(), self.clock, user_id='alumno_42')
        self.collector = EventCollector(self.session, self.clock)

    def test_click_maps_element_and_link_type(self):
        record = self.collector.on_event({
            'type': 'click',
            'target': {
                'tagName': 'A',
                'id': 'inscribete',
                'className': 'btn btn-primary',
                'textContent': '  Inscríbete ahora en el Bachillerato General Estatal del estado  ',
                'attributes': {'href': 'mailto:contacto@bge.edu.mx', 'data-track': 'cta', 'style': 'x'},
            },
            'clientX': 10,
            'clientY': 20,
        })

        wire = record.to_wire()
        self.assertEqual(wire['type'], 'click')
        self.assertEqual(wire['userId'], 'alumno_42')
        self.assertTrue(wire['id'].startswith('evt_1700000000000_'))
        element = wire['payload']['element']
        self.assertEqual(element['tag'], 'a')
        self.assertEqual(element['classes'], ['btn', 'btn-primary'])
        self.assertEqual(len(element['text']), 50)
        self.assertNotIn('style', element['attributes'])
        self.assertEqual(wire['payload']['linkType'], 'email')
        self.assertEqual(wire['payload']['x'], 10)

    def test_click_without_target_yields_null_element(self):
        record = self.collector.on_event({'type': 'click'})
        self.assertEqual(record.type, 'click')
        self.assertIsNone(record.payload.element)

    def test_scroll_alias_and_checkpoint(self):
        record = self.collector.on_event({'type': 'scroll', 'scrollTop': 900, 'scrollHeight': 2000, 'viewportHeight': 800})
        self.assertEqual(record.type, 'scroll_depth')
        self.assertEqual(record.payload.percent, 75)
        self.assertEqual(record.payload.checkpoint, 75)

    def test_form_submit_keeps_field_names_only(self):
        record = self.collector.on_event({
            'type': 'submit',
            'target': {'id': 'contacto', 'fields': {'nombre': 'Ana', 'correo': 'ana@example.com'}},
        })
        wire = record.to_wire()
        self.assertEqual(wire['type'], 'form_submit')
        self.assertEqual(wire['payload']['formId'], 'contacto')
        self.assertEqual(wire['payload']['fields'], ['nombre', 'correo'])
        self.assertNotIn('Ana', str(wire))

    def test_data_sub_dict_is_merged(self):
        record = self.collector.on_event({
            'type': 'educational',
            'data': {'action': 'lesson_open', 'courseId': 'mat-1', 'lessonId': 'l-3'},
        })
        self.assertEqual(record.type, 'educational_interaction')
        self.assertEqual(record.payload.course_id, 'mat-1')
        self.assertEqual(record.payload.lesson_id, 'l-3')

    def test_time_on_page_engagement(self):
        record = self.collector.on_event({'type': 'time_on_page', 'totalTime': 60000, 'activeTime': 45000, 'page': '/'})
        self.assertEqual(record.payload.engagement_rate, 0.75)

    def test_malformed_inputs_become_capture_errors(self):
        for raw in (None, 'click', {'type': ''}, {'type': 'teleport'}, {'type': 'performance', 'value': 3}):
            record = self.collector.on_event(raw)
            self.assertEqual(record.type, 'error', raw)
            self.assertEqual(record.payload.kind, 'capture_error', raw)
            self.assertTrue(record.payload.message)

    def test_degenerate_fields_map_to_empty_values(self):
        click = self.collector.on_event({'type': 'click', 'target': {'tagName': 'DIV', 'classList': 5}})
        self.assertEqual(click.type, 'click')
        self.assertEqual(click.payload.element.classes, [])

        for raw in ({'type': 'performance', 'metric': 'lcp'}, {'type': 'performance', 'metric': 'lcp', 'value': 'fast'}):
            record = self.collector.on_event(raw)
            self.assertEqual(record.type, 'performance', raw)
            self.assertEqual(record.payload.metric, 'lcp')
            self.assertIsNone(record.payload.value)

    def test_timestamps_never_decrease(self):
        clock = _BackwardsClock([1000, 2000, 1500, 2500])
        collector = EventCollector(SessionTracker(MemoryStorage(), self.clock), clock)
        stamps = [collector.on_event({'type': 'page_view'}).timestamp for _ in range(4)]
        self.assertEqual(stamps, [1000, 2000, 2000, 2500])

    def test_records_parse_back_from_wire(self):
        record = self.collector.on_event({'type': 'performance', 'metric': 'lcp', 'value': 1830.5, 'page': '/'})
        parsed = parse_event(record.to_wire())
        self.assertEqual(parsed, record)
        self.assertEqual(parsed.payload.metric, 'lcp')

    def test_ids_are_unique(self):
        ids = {self.collector.on_event({'type': 'page_view'}).id for _ in range(200)}
        self.assertEqual(len(ids), 200)

    def test_privacy_mode_pseudonymizes_user_and_click(self):
        collector = EventCollector(self.session, self.clock, privacy_mode=True, privacy_salt='s4lt')
        record = collector.on_event({
            'type': 'click',
            'target': {'tagName': 'A', 'textContent': 'Ana López', 'attributes': {'href': 'tel:+525511112222'}},
        })
        wire = record.to_wire()
        self.assertEqual(wire['userId'], pseudonymize('alumno_42', 's4lt'))
        self.assertIsNone(wire['payload']['element']['text'])
        self.assertTrue(wire['payload']['element']['attributes']['href'].startswith('anon_'))
        self.assertEqual(wire['payload']['linkType'], 'phone')

    def test_privacy_mode_hashes_ids_that_look_pseudonymous(self):
        session = SessionTracker(MemoryStorage(), self.clock, user_id='anon_maria')
        collector = EventCollector(session, self.clock, privacy_mode=True, privacy_salt='s4lt')
        record = collector.on_event({'type': 'page_view', 'page': '/'})
        self.assertEqual(record.user_id, pseudonymize('anon_maria', 's4lt'))


class CollectorHelpersTestCase(unittest.TestCase):
    def test_classify_link(self):
        self.assertEqual(classify_link('#inicio'), 'anchor')
        self.assertEqual(classify_link('/egresados'), 'internal')
        self.assertEqual(classify_link('https://bge.edu.mx/x', 'bge.edu.mx'), 'internal')
        self.assertEqual(classify_link('https://example.com'), 'external')
        self.assertIsNone(classify_link(None))

    def test_scroll_percent_short_page_and_clamp(self):
        self.assertEqual(scroll_percent({'scrollTop': 0, 'scrollHeight': 500, 'viewportHeight': 800}), 100)
        self.assertEqual(scroll_percent({'percent': 140}), 100)
        self.assertEqual(scroll_percent({'percent': -3}), 0)


if __name__ == '__main__':
    unittest.main()
