from __future__ import annotations

import json
import sys
import unittest
import xml.etree.ElementTree as ET
from pathlib import Path

TESTS_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = TESTS_DIR.parent
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from processgraph import codec
from processgraph.codec import BPMN_NS, BPMNDI_NS, DC_NS, TAG_BY_TYPE, CodecError
from processgraph.config import DEFAULT_INTERCHANGE
from processgraph.model import FOOTPRINT_BY_TYPE, MultiInstance, Node, NodeType, Point
from processgraph.store import GraphStore


def _q(ns: str, local: str) -> str:
    return f"{{{ns}}}{local}"


def _two_tasks() -> GraphStore:
    store = GraphStore()
    store.add_node((-2, 0))
    store.add_node((2, 1))
    store.add_connection("1", "2")
    return store


class SnapshotTests(unittest.TestCase):
    def test_round_trip_restores_model_and_counters(self) -> None:
        original = GraphStore.with_sample_process()
        original.update_node_description("2", "Review the request")
        original.update_node_multi_instance("2", MultiInstance.PARALLEL)
        text = original.save_snapshot()

        restored = GraphStore()
        self.assertTrue(restored.load_snapshot(text))
        self.assertEqual(restored.status, "Diagram loaded.")
        self.assertEqual(restored.nodes(), original.nodes())
        self.assertEqual(restored.connections(), original.connections())
        self.assertEqual(restored.node_counter, 6)
        self.assertEqual(restored.connection_counter, 5)
        self.assertFalse(restored.dirty)

    def test_payload_shape(self) -> None:
        store = _two_tasks()
        payload = json.loads(codec.export_snapshot(store))
        self.assertEqual(payload["version"], 1)
        self.assertEqual(payload["processId"], "Process_1")
        node = payload["nodes"][1]
        self.assertEqual(node["position"], {"x": 2.0, "y": 0.0, "z": 1.0})
        self.assertIsNone(node["multiInstance"])
        self.assertIsNone(node["parentId"])
        self.assertIsNone(node["bounds"])
        self.assertEqual(payload["connections"][0]["sourceId"], "1")
        self.assertIsNone(payload["connections"][0]["waypoints"])

    def test_save_snapshot_marks_clean(self) -> None:
        store = _two_tasks()
        self.assertTrue(store.dirty)
        store.save_snapshot()
        self.assertFalse(store.dirty)
        self.assertIsNotNone(store.last_saved_at)
        self.assertEqual(store.status, "Saved snapshot.")

    def test_legacy_type_tags_and_missing_fields(self) -> None:
        raw = json.dumps(
            {
                "nodes": [
                    {"id": "1", "type": "usertask", "position": {"x": 1, "z": 2}},
                    {"id": "2", "type": "xgateway"},
                ],
                "connections": [{"id": "Flow_3_1_2", "sourceId": "1", "targetId": "2"}],
            }
        )
        store = GraphStore()
        self.assertTrue(store.load_snapshot(raw))
        self.assertEqual(store.get_node("1").type, NodeType.USER_TASK)
        self.assertEqual(store.get_node("1").position, Point(1.0, 2.0))
        self.assertEqual(store.get_node("2").type, NodeType.EXCLUSIVE_GATEWAY)
        self.assertEqual(store.get_node("2").position, Point(0.0, 0.0))
        self.assertEqual(store.get_node("2").name, "Node 2")
        self.assertEqual(store.process_id, "Process_1")
        self.assertEqual(store.connection_counter, 3)

    def test_failures_leave_model_unchanged(self) -> None:
        cases = [
            ("{not json", "Failed to load file"),
            ("[]", "Invalid file: expected a JSON object."),
            ('{"connections": []}', "Invalid file: missing nodes."),
            ('{"nodes": []}', "Invalid file: missing connections."),
            ('{"nodes": [{"id": "1", "type": "rocket"}], "connections": []}', "Invalid file: unknown node type"),
            (
                '{"nodes": [{"id": "1", "type": "start"}, {"id": "1", "type": "start"}], "connections": []}',
                "Invalid file: duplicate node id 1.",
            ),
        ]
        for raw, status in cases:
            store = _two_tasks()
            nodes, connections = store.nodes(), store.connections()
            self.assertFalse(store.load_snapshot(raw), raw)
            self.assertTrue(store.status.startswith(status), store.status)
            self.assertEqual(store.nodes(), nodes)
            self.assertEqual(store.connections(), connections)

    def test_parse_errors_carry_codes(self) -> None:
        with self.assertRaises(CodecError) as ctx:
            codec.parse_snapshot("{")
        self.assertEqual(ctx.exception.code, "E_PARSE")
        with self.assertRaises(CodecError) as ctx:
            codec.parse_snapshot("{}")
        self.assertEqual(ctx.exception.code, "E_SNAPSHOT")
        with self.assertRaises(CodecError) as ctx:
            codec.parse_interchange_xml("<definitions>\n<process></definitions>")
        self.assertEqual(ctx.exception.code, "E_PARSE")
        self.assertEqual(ctx.exception.line, 2)

    def test_empty_lists_replace_diagram(self) -> None:
        store = _two_tasks()
        self.assertTrue(store.load_snapshot('{"nodes": [], "connections": []}'))
        self.assertEqual(store.nodes(), [])
        self.assertEqual(store.connections(), [])
        self.assertEqual(store.node_counter, 0)

    def test_dangling_connections_and_bad_parents_are_dropped(self) -> None:
        raw = json.dumps(
            {
                "nodes": [
                    {"id": "1", "type": "userTask", "parentId": "9"},
                    {"id": "2", "type": "userTask", "parentId": "1"},
                ],
                "connections": [
                    {"id": "Flow_1_1_2", "sourceId": "1", "targetId": "2"},
                    {"id": "Flow_2_1_7", "sourceId": "1", "targetId": "7"},
                ],
            }
        )
        document = codec.parse_snapshot(raw)
        self.assertEqual([c.id for c in document.connections], ["Flow_1_1_2"])
        self.assertTrue(all(node.parent_id is None for node in document.nodes))
        self.assertEqual(len(document.warnings), 3)

    def test_parent_cycles_are_broken(self) -> None:
        raw = json.dumps(
            {
                "nodes": [
                    {"id": "A", "type": "subprocess", "parentId": "B"},
                    {"id": "B", "type": "subprocess", "parentId": "A"},
                ],
                "connections": [],
            }
        )
        nodes = {n.id: n for n in codec.parse_snapshot(raw).nodes}
        self.assertIsNone(nodes["A"].parent_id)
        self.assertEqual(nodes["B"].parent_id, "A")


class InterchangeExportTests(unittest.TestCase):
    def test_document_structure(self) -> None:
        store = _two_tasks()
        store.update_process_name("Orders")
        text = codec.export_interchange_xml(store)
        self.assertTrue(text.startswith('<?xml version="1.0" encoding="UTF-8"?>'))
        root = ET.fromstring(text)
        self.assertEqual(root.tag, _q(BPMN_NS, "definitions"))
        process = root.find(_q(BPMN_NS, "process"))
        self.assertEqual(process.get("id"), "Process_1")
        self.assertEqual(process.get("name"), "Orders")
        self.assertEqual(len(process.findall(_q(BPMN_NS, "userTask"))), 2)
        flow = process.find(_q(BPMN_NS, "sequenceFlow"))
        self.assertEqual((flow.get("sourceRef"), flow.get("targetRef")), ("1", "2"))

        shapes = {s.get("bpmnElement"): s for s in root.iter(_q(BPMNDI_NS, "BPMNShape"))}
        bounds = shapes["1"].find(_q(DC_NS, "Bounds"))
        self.assertEqual((bounds.get("width"), bounds.get("height")), ("100", "80"))
        # Leftmost shape edge sits on the margin; +z points up so the higher node gets the smaller y.
        self.assertEqual(float(bounds.get("x")), DEFAULT_INTERCHANGE.margin)
        second = shapes["2"].find(_q(DC_NS, "Bounds"))
        self.assertLess(float(second.get("y")), float(bounds.get("y")))
        edges = list(root.iter(_q(BPMNDI_NS, "BPMNEdge")))
        self.assertEqual(len(edges), 1)

    def test_message_events_documentation_and_loops(self) -> None:
        store = GraphStore()
        store.set_node_type(NodeType.MESSAGE_START)
        store.add_node((0, 0))
        store.set_node_type(NodeType.SERVICE_TASK)
        store.add_node((3, 0))
        store.update_node_description("2", "Call the billing API")
        store.update_node_multi_instance("2", MultiInstance.SEQUENTIAL)
        root = ET.fromstring(codec.export_interchange_xml(store))
        start = root.find(f".//{_q(BPMN_NS, 'startEvent')}")
        self.assertIsNotNone(start.find(_q(BPMN_NS, "messageEventDefinition")))
        task = root.find(f".//{_q(BPMN_NS, 'serviceTask')}")
        self.assertEqual(task.find(_q(BPMN_NS, "documentation")).text, "Call the billing API")
        loop = task.find(_q(BPMN_NS, "multiInstanceLoopCharacteristics"))
        self.assertEqual(loop.get("isSequential"), "true")

    def test_nested_elements_and_flows(self) -> None:
        store = GraphStore()
        store.set_node_type(NodeType.SUBPROCESS)
        store.add_node((0, 0))
        store.set_node_type(NodeType.USER_TASK)
        store.add_node((-1, 0))
        store.add_node((1, 0))
        store.add_node((6, 0))
        store.set_node_parent("2", "1")
        store.set_node_parent("3", "1")
        store.add_connection("2", "3")
        store.add_connection("3", "4")

        root = ET.fromstring(codec.export_interchange_xml(store))
        process = root.find(_q(BPMN_NS, "process"))
        sub = process.find(_q(BPMN_NS, "subProcess"))
        self.assertEqual({t.get("id") for t in sub.findall(_q(BPMN_NS, "userTask"))}, {"2", "3"})
        self.assertEqual([f.get("id") for f in sub.findall(_q(BPMN_NS, "sequenceFlow"))], ["Flow_1_2_3"])
        self.assertEqual([f.get("id") for f in process.findall(_q(BPMN_NS, "sequenceFlow"))], ["Flow_2_3_4"])
        shape = next(s for s in root.iter(_q(BPMNDI_NS, "BPMNShape")) if s.get("bpmnElement") == "1")
        self.assertEqual(shape.get("isExpanded"), "true")

        restored = GraphStore()
        self.assertTrue(codec.import_interchange_xml(restored, codec.export_interchange_xml(store)))
        self.assertEqual(restored.get_node("2").parent_id, "1")
        self.assertEqual(restored.get_node("3").parent_id, "1")
        self.assertIsNone(restored.get_node("4").parent_id)
        bounds = restored.get_node("1").bounds
        self.assertAlmostEqual(bounds.width, 4.4)
        self.assertAlmostEqual(bounds.height, 2.4)

    def test_wide_subprocess_and_waypoints_stay_non_negative(self) -> None:
        store = GraphStore()
        store.set_node_type(NodeType.SUBPROCESS)
        store.add_node((0, 0))
        store.set_node_type(NodeType.USER_TASK)
        store.add_node((3, 0))
        store.set_node_parent("2", "1")
        root = ET.fromstring(codec.export_interchange_xml(store))
        xs = [float(b.get("x")) for b in root.iter(_q(DC_NS, "Bounds"))]
        ys = [float(b.get("y")) for b in root.iter(_q(DC_NS, "Bounds"))]
        self.assertTrue(all(x >= 0 for x in xs), xs)
        self.assertTrue(all(y >= 0 for y in ys), ys)
        self.assertAlmostEqual(min(xs), DEFAULT_INTERCHANGE.margin)

        raw = json.dumps(
            {
                "nodes": [
                    {"id": "A", "type": "userTask", "position": {"x": 0, "z": 0}},
                    {"id": "B", "type": "userTask", "position": {"x": 4, "z": 0}},
                ],
                "connections": [
                    {
                        "id": "Flow_1_A_B",
                        "sourceId": "A",
                        "targetId": "B",
                        "waypoints": [{"x": 0, "z": 0}, {"x": 0, "z": 6}, {"x": -3, "z": 6}, {"x": 4, "z": 0}],
                    }
                ],
            }
        )
        routed = GraphStore()
        self.assertTrue(routed.load_snapshot(raw))
        root = ET.fromstring(codec.export_interchange_xml(routed))
        waypoints = [(float(w.get("x")), float(w.get("y"))) for w in root.iter(f"{{{codec.DI_NS}}}waypoint")]
        self.assertEqual(len(waypoints), 4)
        self.assertTrue(all(x >= 0 and y >= 0 for x, y in waypoints), waypoints)
        self.assertEqual(waypoints[2], (DEFAULT_INTERCHANGE.margin, DEFAULT_INTERCHANGE.margin))


class InterchangeImportTests(unittest.TestCase):
    def test_two_task_round_trip(self) -> None:
        store = _two_tasks()
        store.move_node("2", (2, 0))
        restored = GraphStore()
        self.assertTrue(codec.import_interchange_xml(restored, codec.export_interchange_xml(store)))
        self.assertEqual(restored.status, "Imported BPMN XML.")
        (conn,) = restored.connections()
        self.assertEqual((conn.source_id, conn.target_id), ("1", "2"))
        for node in store.nodes():
            other = restored.get_node(node.id)
            self.assertAlmostEqual(other.position.x, node.position.x, places=3)
            self.assertAlmostEqual(other.position.z, node.position.z, places=3)
            self.assertEqual(other.type, node.type)
            self.assertEqual(other.name, node.name)

        again = GraphStore()
        codec.import_interchange_xml(again, codec.export_interchange_xml(restored))
        self.assertEqual(again.connections()[0].id, conn.id)

    def test_flow_waypoints_are_recovered(self) -> None:
        xml_text = """<?xml version="1.0" encoding="UTF-8"?>
<bpmn:definitions xmlns:bpmn="http://www.omg.org/spec/BPMN/20100524/MODEL"
  xmlns:bpmndi="http://www.omg.org/spec/BPMN/20100524/DI"
  xmlns:dc="http://www.omg.org/spec/DD/20100524/DC"
  xmlns:di="http://www.omg.org/spec/DD/20100524/DI" id="d">
  <bpmn:process id="Orders" name="Orders">
    <bpmn:task id="ignored" />
    <bpmn:userTask id="A" name="Check" />
    <bpmn:endEvent id="B" />
    <bpmn:intermediateCatchEvent id="Timer" />
    <bpmn:sequenceFlow id="F1" sourceRef="A" targetRef="B" />
    <bpmn:sequenceFlow id="F2" sourceRef="A" targetRef="Ghost" />
  </bpmn:process>
  <bpmndi:BPMNDiagram id="D1">
    <bpmndi:BPMNPlane id="P1" bpmnElement="Orders">
      <bpmndi:BPMNShape id="A_di" bpmnElement="A"><dc:Bounds x="0" y="0" width="100" height="80" /></bpmndi:BPMNShape>
      <bpmndi:BPMNShape id="B_di" bpmnElement="B"><dc:Bounds x="375" y="15" width="50" height="50" /></bpmndi:BPMNShape>
      <bpmndi:BPMNEdge id="F1_di" bpmnElement="F1">
        <di:waypoint x="50" y="40" />
        <di:waypoint x="50" y="200" />
        <di:waypoint x="400" y="200" />
        <di:waypoint x="400" y="40" />
      </bpmndi:BPMNEdge>
    </bpmndi:BPMNPlane>
  </bpmndi:BPMNDiagram>
</bpmn:definitions>"""
        document = codec.parse_interchange_xml(xml_text)
        self.assertEqual(document.process_id, "Orders")
        self.assertEqual({n.id for n in document.nodes}, {"A", "B"})
        nodes = {n.id: n for n in document.nodes}
        self.assertEqual(nodes["A"].position, Point(-2.1875, 0.0))
        self.assertEqual(nodes["B"].type, NodeType.TERMINAL)
        self.assertEqual(nodes["B"].name, "Node B")
        (conn,) = document.connections
        self.assertEqual(conn.id, "F1")
        self.assertEqual(conn.waypoints[1], Point(-2.1875, -2.0))
        self.assertEqual(len(document.warnings), 3)

    def test_malformed_and_processless_documents_fail_cleanly(self) -> None:
        store = _two_tasks()
        nodes = store.nodes()
        self.assertFalse(codec.import_interchange_xml(store, "<bpmn:definitions"))
        self.assertTrue(store.status.startswith("Invalid BPMN XML"))
        self.assertFalse(
            codec.import_interchange_xml(store, f'<definitions xmlns="{BPMN_NS}"><collaboration /></definitions>')
        )
        self.assertEqual(store.status, "Invalid BPMN XML: no process element.")
        self.assertEqual(store.nodes(), nodes)

    def test_invalid_process_id_keeps_current(self) -> None:
        store = GraphStore()
        store.update_process_id("Keep_Me")
        xml_text = f'<definitions xmlns="{BPMN_NS}"><process id="1 bad"><userTask id="T" /></process></definitions>'
        self.assertTrue(codec.import_interchange_xml(store, xml_text))
        self.assertEqual(store.process_id, "Keep_Me")
        self.assertEqual(store.get_node("T").position, Point(0.0, 0.0))


class CompletenessTests(unittest.TestCase):
    def test_every_type_has_tag_and_footprint(self) -> None:
        for node_type in NodeType:
            self.assertIn(node_type, TAG_BY_TYPE)
            self.assertIn(node_type, FOOTPRINT_BY_TYPE)
            width, height = codec._shape_size(Node("n", node_type, Point(0, 0)), DEFAULT_INTERCHANGE)
            self.assertGreater(width, 0)
            self.assertGreater(height, 0)

    def test_every_type_survives_interchange(self) -> None:
        for node_type in NodeType:
            store = GraphStore()
            store.set_node_type(node_type)
            store.add_node((0, 0))
            document = codec.parse_interchange_xml(codec.export_interchange_xml(store))
            self.assertEqual([n.type for n in document.nodes], [node_type], node_type)


if __name__ == "__main__":
    unittest.main()
