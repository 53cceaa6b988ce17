import json
import logging
import os
import shutil
import tempfile
import threading
import unittest

from skillhost.config import RuntimeConfig
from skillhost.errors import StorageFailure
from skillhost.kernel import AppContext, Kernel, ServiceNotRegistered
from skillhost.observability.logging import JsonFormatter
from skillhost.runtime.dialogue import ReplyOutcome
from skillhost.runtime.storage import MemoryStorageAdapter, SQLiteStorageAdapter
from skillhost.skills import BaseSkill, SkillState

logging.basicConfig(level=logging.CRITICAL)  # Silence internal logs during tests

CFG = {"storage_backend": "memory", "start_timeout_seconds": 2.0, "handler_timeout_seconds": 2.0}


class PizzaSkill(BaseSkill):
    """Asks for a size, confirms the order, then announces it."""

    NAME = "pizza"
    SUBSCRIPTIONS = [("order.pizza", "on_order")]

    def on_order(self, payload, sender):
        session = payload["session"]
        self.ctx.on_reply(
            session,
            self.on_size,
            validator={"kind": "allow_list", "allowed": ["small", "large"]},
            carry={"session": session, "topping": payload.get("topping", "cheese")},
        )
        return "which size?"

    def on_size(self, size, carry):
        carry["size"] = size
        self.ctx.confirm(carry["session"], self.on_confirm, carry=carry)
        return f"a {size} {carry['topping']} pizza?"

    def on_confirm(self, confirmed, carry):
        if not confirmed:
            return "cancelled"
        self.ctx.set("last_order", {"size": carry["size"], "topping": carry["topping"]}, persist=True)
        self.ctx.publish("order.placed", carry["size"])
        return "ordered"


class KitchenSkill(BaseSkill):
    NAME = "kitchen"

    received = []
    arrived = threading.Event()

    def on_start(self):
        self.ctx.subscribe("order.*", self.on_any_order)

    def on_any_order(self, payload, sender):
        if sender["channel"] == "order.placed":
            KitchenSkill.received.append((payload, sender["from"]))
            KitchenSkill.arrived.set()


class DoorbellSkill(BaseSkill):
    NAME = "doorbell"
    SUBSCRIPTIONS = [("door.ring", "on_ring")]

    def on_ring(self, payload, sender):
        self.ctx.confirm(payload, self.on_answer)
        return sender["from"]

    def on_answer(self, open_door, carry):
        return "opening" if open_door else "ignoring"


class TestKernelEndToEnd(unittest.TestCase):

    def setUp(self):
        KitchenSkill.received = []
        KitchenSkill.arrived.clear()
        self.storage = MemoryStorageAdapter()
        self.kernel = Kernel(CFG, storage=self.storage).start()
        self.kernel.register(PizzaSkill)
        self.kernel.register(KitchenSkill)
        self.assertTrue(self.kernel.start_skill("pizza").ok)
        self.assertTrue(self.kernel.start_skill("kitchen").ok)

    def tearDown(self):
        self.kernel.shutdown()

    def test_multi_turn_dialogue(self):
        first = self.kernel.publish("order.pizza", {"session": "s1", "topping": "ham"}).wait(timeout=5)
        self.assertIn("which size?", first)

        rejected = self.kernel.submit_reply("s1", "medium")
        self.assertIs(rejected.outcome, ReplyOutcome.REJECTED)

        size = self.kernel.submit_reply("s1", "Large")
        self.assertIs(size.outcome, ReplyOutcome.ACCEPTED)
        self.assertEqual(size.future.result(timeout=5).value, "a large ham pizza?")

        confirm = self.kernel.submit_reply("s1", "yes please")
        self.assertEqual(confirm.future.result(timeout=5).value, "ordered")

        self.assertTrue(KitchenSkill.arrived.wait(5))
        self.assertEqual(KitchenSkill.received, [("large", "pizza")])
        self.assertEqual(self.kernel.context_store.get("pizza", "last_order"), {"size": "large", "topping": "ham"})
        self.assertEqual(self.storage.count(), 1)
        self.assertIs(self.kernel.submit_reply("s1", "yes").outcome, ReplyOutcome.UNMATCHED)

    def test_long_conversation_does_not_grow_handler_table(self):
        self.kernel.register(DoorbellSkill)
        self.kernel.start_skill("doorbell")
        handlers = self.kernel.app.get("handlers")
        baseline = handlers.count("doorbell")

        for _ in range(50):
            self.assertEqual(self.kernel.publish("door.ring", "front").wait(timeout=5), ["host"])
            answer = self.kernel.submit_reply("front", "yes")
            self.assertEqual(answer.future.result(timeout=5).value, "opening")
        self.assertTrue(self.kernel.dispatcher.wait_idle(timeout=5))

        self.assertEqual(len(self.kernel.dialogue), 0)
        self.assertEqual(handlers.count("doorbell"), baseline)

    def test_stopping_skill_discards_pending_replies(self):
        self.kernel.publish("order.pizza", {"session": "s2"}).wait(timeout=5)
        self.assertEqual(len(self.kernel.dialogue), 1)
        self.kernel.stop_skill("pizza")
        self.assertEqual(len(self.kernel.dialogue), 0)
        self.assertIs(self.kernel.submit_reply("s2", "small").outcome, ReplyOutcome.UNMATCHED)

    def test_health_report(self):
        health = self.kernel.health()
        for key in ("uptime_seconds", "registered_services", "skills", "dispatch", "context", "pending_dialogues", "metrics"):
            self.assertIn(key, health)
        self.assertEqual(health["skills"]["pizza"]["state"], SkillState.ACTIVE.value)
        self.assertIn("topic:order.pizza", health["dispatch"]["channels"])
        self.assertIn("skill_manager", health["registered_services"])
        self.assertEqual(health["metrics"]["lifecycle.started.count"], 2)

    def test_shutdown_stops_all_skills_and_is_idempotent(self):
        manager = self.kernel.skills
        self.kernel.shutdown()
        self.kernel.shutdown()
        self.assertIs(manager.state("pizza"), SkillState.STOPPED)
        self.assertIs(manager.state("kitchen"), SkillState.STOPPED)
        self.assertEqual(self.kernel.publish("order.pizza", {"session": "x"}).recipients, [])


class TestKernelDurability(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="skillhost-kernel-")
        self.cfg = {"storage_backend": "sqlite", "storage_path": os.path.join(self.tmpdir, "ctx.db")}

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_sqlite_backed_context_survives_restart(self):
        with Kernel(self.cfg) as k:
            k.register(PizzaSkill)
            k.start_skill("pizza")
            k.context_store.set("pizza", "favourite", "margherita", persist=True)
            k.context_store.set("pizza", "draft", "scratch")

        with Kernel(self.cfg) as k:
            k.register(PizzaSkill)
            k.start_skill("pizza")
            self.assertEqual(k.context_store.get("pizza", "favourite"), "margherita")
            self.assertIsNone(k.context_store.get("pizza", "draft"))

    def test_explicit_storage_adapter_wins_over_config(self):
        storage = SQLiteStorageAdapter(os.path.join(self.tmpdir, "explicit.db"))
        with Kernel(self.cfg, storage=storage) as k:
            self.assertIs(k.context_store.storage, storage)


class BrokenStorage(MemoryStorageAdapter):
    def write(self, skill_id, key, value, expires_at):
        raise OSError("read-only filesystem")


class TestStorageFaultsInsideSkills(unittest.TestCase):

    def test_durable_write_failure_is_raised_to_caller(self):
        cfg = dict(CFG, storage_retry_attempts=2, storage_retry_backoff_seconds=0.0)
        with Kernel(cfg, storage=BrokenStorage()) as k:
            k.register(PizzaSkill)
            k.start_skill("pizza")
            with self.assertRaises(StorageFailure):
                k.context_store.set("pizza", "k", "v", persist=True)


class TestRuntimeConfig(unittest.TestCase):

    def test_defaults(self):
        cfg = RuntimeConfig.from_mapping(environ={})
        self.assertEqual(cfg.storage_backend, "sqlite")
        self.assertEqual(cfg.reply_window_seconds, 300.0)

    def test_mapping_and_unknown_keys(self):
        cfg = RuntimeConfig.from_mapping({"lane_workers": 2, "no_such_option": 1}, environ={})
        self.assertEqual(cfg.lane_workers, 2)
        self.assertFalse(hasattr(cfg, "no_such_option"))

    def test_environment_overrides_mapping(self):
        env = {
            "SKILLHOST_LANE_WORKERS": "3",
            "SKILLHOST_HANDLER_TIMEOUT_SECONDS": "1.5",
            "SKILLHOST_JSON_LOGS": "false",
            "SKILLHOST_LOG_FILE": "",
        }
        cfg = RuntimeConfig.from_mapping({"lane_workers": 2, "log_file": "x.log"}, environ=env)
        self.assertEqual(cfg.lane_workers, 3)
        self.assertEqual(cfg.handler_timeout_seconds, 1.5)
        self.assertIs(cfg.json_logs, False)
        self.assertIsNone(cfg.log_file)


class TestAppContext(unittest.TestCase):

    def test_register_and_get(self):
        app = AppContext()
        app.register("answer", 42, metadata={"kind": "constant"})
        self.assertEqual(app["answer"], 42)
        self.assertTrue(app.has("answer"))
        self.assertEqual(app.list_services()["answer"]["metadata"], {"kind": "constant"})
        with self.assertRaises(KeyError):
            app.register("answer", 43)
        app.register("answer", 43, replace=True)
        self.assertEqual(app.get("answer"), 43)

    def test_lazy_factories(self):
        app = AppContext()
        calls = []
        app.register("base", 10)
        app.register("derived", lambda ctx: calls.append(1) or ctx.get("base") + 1, lazy=True)
        self.assertFalse(app.list_services()["derived"]["materialized"])
        self.assertEqual(app.get("derived"), 11)
        self.assertEqual(app.get("derived"), 11)
        self.assertEqual(calls, [1])

    def test_missing_service(self):
        app = AppContext()
        with self.assertRaises(ServiceNotRegistered):
            app.get("nope")
        self.assertIsNone(app.get("nope", None))
        with self.assertRaises(ServiceNotRegistered):
            app.unregister("nope")

    def test_shutdown_tasks_most_recent_first(self):
        app = AppContext()
        first, second = (lambda: None), (lambda: None)
        app.add_shutdown_task(first)
        app.add_shutdown_task(second)
        self.assertEqual(app.shutdown_tasks(), [second, first])

    def test_kernels_do_not_share_services(self):
        a = Kernel(CFG)
        b = Kernel(CFG)
        self.assertIsNot(a.dispatcher, b.dispatcher)
        self.assertIsNot(a.context_store, b.context_store)
        a.shutdown()
        b.shutdown()


class TestJsonFormatter(unittest.TestCase):

    def test_context_fields_are_lifted(self):
        record = logging.LogRecord("skillhost.test", logging.INFO, __file__, 1, "hello %s", ("world",), None)
        record.skill_id = "pizza"
        record.channel = "order.pizza"
        line = json.loads(JsonFormatter().format(record))
        self.assertEqual(line["message"], "hello world")
        self.assertEqual(line["skill_id"], "pizza")
        self.assertEqual(line["channel"], "order.pizza")
        self.assertEqual(line["level"], "INFO")
        self.assertNotIn("session_id", line)


if __name__ == "__main__":
    unittest.main()
