import unittest
import asyncio
import sys
import warnings
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))
from flowlet import Context, DEFAULT_ACTION, Flow, Node, ValidationError


class NumberNode(Node):
    def __init__(self, number):
        super().__init__(name=f"NumberNode({number})")
        self.number = number

    async def prep(self, ctx, params):
        ctx["current"] = self.number


class AddNode(Node):
    def __init__(self, number):
        super().__init__(name=f"AddNode({number})")
        self.number = number

    async def prep(self, ctx, params):
        ctx["current"] += self.number


class CheckPositiveNode(Node):
    async def post(self, ctx, params, prep_res, exec_res):
        return "positive" if ctx["current"] >= 0 else "negative"


class NoOpNode(Node):
    async def prep(self, ctx, params):
        ctx.setdefault("visited", []).append("noop")


class TestFlowBasics(unittest.TestCase):
    def test_start_then_double(self):
        """Two-node flow: the first seeds a value, the second doubles it"""
        start = Node(exec=lambda ctx, params, _: ctx.set("value", 10))
        double = Node(exec=lambda ctx, params, _: ctx.set("value", ctx["value"] * 2))
        start.then(double)
        ctx = Context()
        asyncio.run(Flow(start=start).run(ctx))
        self.assertEqual(ctx["value"], 20)

    def test_linear_chain_with_rshift(self):
        ctx = Context()
        n1 = NumberNode(5)
        n1 >> AddNode(3) >> AddNode(-1)
        asyncio.run(Flow(start=n1).run(ctx))
        self.assertEqual(ctx["current"], 7)

    def test_start_method_returns_node(self):
        flow = Flow()
        n1 = NumberNode(1)
        self.assertIs(flow.start(n1), n1)
        self.assertIs(flow.start_node, n1)

    def test_branching_on_action(self):
        for seed, expected in ((5, "positive"), (-5, "negative")):
            ctx = Context()
            start, check = NumberNode(seed), CheckPositiveNode()
            pos, neg = AddNode(100), AddNode(-100)
            start >> check
            check - "positive" >> pos
            check - "negative" >> neg
            asyncio.run(Flow(start=start).run(ctx))
            self.assertEqual(ctx["current"], seed + (100 if expected == "positive" else -100))

    def test_cycle_terminates_on_unmapped_action(self):
        class CountDown(Node):
            async def post(self, ctx, params, prep_res, exec_res):
                ctx["n"] -= 1
                return "again" if ctx["n"] > 0 else "stop"

        node = CountDown()
        node - "again" >> node
        ctx = Context({"n": 3})
        action = asyncio.run(Flow(start=node).run(ctx))
        self.assertEqual(ctx["n"], 0)
        # The flow's default post hands back the last node's action
        self.assertEqual(action, "stop")

    def test_unmapped_action_warns_when_node_has_successors(self):
        a = Node(post=lambda *_: "missing")
        a - "other" >> Node()
        with warnings.catch_warnings(record=True) as w:
            warnings.simplefilter("always")
            asyncio.run(Flow(start=a).run())
        self.assertTrue(any("Flow ends" in str(x.message) for x in w))

    def test_missing_start_node(self):
        with self.assertRaises(ValidationError):
            asyncio.run(Flow().run())

    def test_flow_prep_and_post(self):
        calls = []

        def prep(ctx, params):
            calls.append("flow_prep")
            return "prepared"

        def post(ctx, params, prep_res, exec_res):
            calls.append(("flow_post", prep_res, exec_res))
            return "finished"

        inner = Node(exec=lambda *_: calls.append("inner"), post=lambda *_: "inner_done")
        action = asyncio.run(Flow(start=inner, prep=prep, post=post).run())
        self.assertEqual(calls, ["flow_prep", "inner", ("flow_post", "prepared", "inner_done")])
        self.assertEqual(action, "finished")

    def test_empty_last_action_becomes_default(self):
        self.assertEqual(asyncio.run(Flow(start=Node()).run()), DEFAULT_ACTION)

    def test_errors_propagate_out_of_flow(self):
        def boom(ctx, params):
            raise RuntimeError("prep exploded")

        after = NoOpNode()
        start = Node(prep=boom)
        start >> after
        ctx = Context()
        with self.assertRaises(RuntimeError):
            asyncio.run(Flow(start=start).run(ctx))
        self.assertNotIn("visited", ctx)


class TestNestedFlows(unittest.TestCase):
    def test_flow_as_node(self):
        ctx = Context()
        inner_start = NumberNode(5)
        inner_start >> AddNode(10)
        inner = Flow(start=inner_start)
        inner >> AddNode(1)
        asyncio.run(Flow(start=inner).run(ctx))
        self.assertEqual(ctx["current"], 16)

    def test_inner_flow_action_routes_outer_flow(self):
        inner = Flow(start=NumberNode(-3), post=lambda c, p, pr, er: "went_negative")
        outer_done = Node(exec=lambda ctx, params, _: ctx.set("routed", True))
        inner - "went_negative" >> outer_done
        ctx = Context()
        asyncio.run(Flow(start=inner).run(ctx))
        self.assertTrue(ctx["routed"])

    def test_flow_params_reach_inner_nodes(self):
        seen = []
        reader = Node(exec=lambda ctx, params, _: seen.append(dict(params)))
        inner = Flow(start=reader).set_params({"inner": 1})
        outer = Flow(start=inner).set_params({"outer": 2})
        asyncio.run(outer.run(params={"call": 3}))
        self.assertEqual(seen, [{"outer": 2, "call": 3, "inner": 1}])

    def test_reusing_flow_runs_from_start(self):
        flow = Flow(start=NumberNode(1))
        ctx = Context()
        asyncio.run(flow.run(ctx))
        ctx["current"] = 99
        asyncio.run(flow.run(ctx))
        self.assertEqual(ctx["current"], 1)


if __name__ == '__main__':
    unittest.main()
