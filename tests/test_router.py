import re

from chatledger.engine import messages
from chatledger.engine.router import extract_reply_ids
from chatledger.llm.parser import MODEL_TIMEOUT, ModelResult
from chatledger.models.schemas import OcrCandidate, PendingKind

from tests.conftest import Harness, run

DUPLICATE_ID = re.compile(r"Duplicate ID: ([A-Z0-9]{6})")


def metrics(h: Harness):
    return h.metrics.all()


class TestReplyContext:
    def test_duplicate_id_wins_over_transaction_id(self):
        assert extract_reply_ids("⚠️ ... 🆔 Duplicate ID: AB12CD") == ("AB12CD", None)

    def test_transaction_id(self):
        assert extract_reply_ids("✅ Expense saved\n🆔 ID: ZX98QW") == (None, "ZX98QW")

    def test_duplicate_id_ignores_case(self):
        assert extract_reply_ids("🆔 duplicate id: ab12cd") == ("AB12CD", None)

    def test_nothing_quoted(self):
        assert extract_reply_ids(None) == (None, None)
        assert extract_reply_ids("hello") == (None, None)


class TestFreeForm:
    def setup_method(self):
        self.h = Harness()
        self.h.login("u1")
        self.h.model.answer("gastei 50 em comida", "add_expense", amount=50, category="comida")

    def test_end_to_end_expense(self):
        reply = self.h.send("u1", "gastei 50 em comida", push_name="Ana")

        assert reply.startswith("👋 Hi Ana!")
        assert "Expense saved" in reply
        entries = self.h.repo.list_entries("acc-1")
        assert len(entries) == 1
        assert entries[0].amount == 50
        assert entries[0].category == "comida"

        [metric] = metrics(self.h)
        assert metric.strategy_used.value == "ai_function_calling"
        assert metric.intent_action == "add_expense"
        assert metric.success is True

        assert len(self.h.cache.entries("u1")) == 1
        assert self.h.undo.size("u1") == 1

    def test_greeting_only_once(self):
        self.h.send("u1", "gastei 50 em comida")
        self.h.model.answer("gastei 20 em uber", "add_expense", amount=20, category="uber")
        reply = self.h.send("u1", "gastei 20 em uber")
        assert not reply.startswith("👋")

    def test_same_message_twice_is_blocked(self):
        self.h.send("u1", "gastei 50 em comida")
        reply = self.h.send("u1", "gastei 50 em comida")

        assert "duplicate" in reply
        assert len(self.h.repo.list_entries("acc-1")) == 1
        assert self.h.pending.get("u1", PendingKind.DUPLICATE_CONFIRMATION) is None
        # second message came from the cache, not the model
        assert len(self.h.model.calls) == 1
        assert metrics(self.h)[-1].strategy_used.value == "semantic_cache"

    def test_low_confidence_suggests_explicit_command(self):
        self.h.model.answer("hmm 50", "add_expense", confidence=0.3, amount=50)
        reply = self.h.send("u1", "hmm 50")
        assert reply.endswith(messages.TRY_EXPLICIT_COMMAND)
        assert self.h.repo.list_entries("acc-1") == []

    def test_model_timeout(self):
        self.h.model.answers["gastei algo"] = ModelResult(error=MODEL_TIMEOUT)
        reply = self.h.send("u1", "gastei algo")
        assert reply == messages.TRY_EXPLICIT_COMMAND
        [metric] = metrics(self.h)
        assert metric.success is False
        assert metric.error_message == MODEL_TIMEOUT

    def test_quota_exceeded(self):
        h = Harness(daily_limit=1)
        h.login("u1")
        h.send("u1", "primeira")
        reply = h.send("u1", "segunda")
        assert reply == messages.QUOTA_EXCEEDED
        assert len(h.model.calls) == 1

    def test_reply_to_transaction_passes_id_to_model(self):
        self.h.send("u1", "muda pra lazer", quoted_text="✅ Expense saved\n🆔 ID: ZX98QW")
        assert self.h.model.calls[-1]["text"] == "muda pra lazer [transaction_id: ZX98QW]"

    def test_login_intent_without_account_shows_usage(self):
        self.h.model.answer("quero entrar na conta", "login")
        reply = self.h.send("u1", "quero entrar na conta")
        assert reply.endswith(messages.command_help("login"))
        assert self.h.sessions.get_or_create_session("u1").account_id == "acc-1"
        assert metrics(self.h)[-1].error_message == "missing_account_id"

    def test_unauthenticated_user_gets_login_prompt(self):
        reply = self.h.send("stranger", "gastei 50 em comida")
        assert reply == messages.LOGIN_PROMPT
        [metric] = [m for m in metrics(self.h) if m.user_id == "stranger"]
        assert metric.success is False
        assert metric.strategy_used.value == "unknown"
        assert self.h.model.calls == []


class TestCommands:
    def setup_method(self):
        self.h = Harness()
        self.h.login("u1")

    def test_add_and_undo(self):
        reply = self.h.send("u1", "/add 50 comida")
        assert "🆔 ID:" in reply
        assert len(self.h.repo.list_entries("acc-1")) == 1

        assert self.h.send("u1", "/undo").startswith("↩️")
        assert self.h.repo.list_entries("acc-1") == []
        assert self.h.send("u1", "/undo") == messages.UNDO_EMPTY

    def test_commands_never_reach_the_model(self):
        reply = self.h.send("u1", "/teleport home")
        assert "Unknown command" in reply
        self.h.send("u1", "/add abc comida")
        assert self.h.model.calls == []
        assert [m.strategy_used.value for m in metrics(self.h)] == ["explicit_command"] * 2

    def test_help_and_login_without_session(self):
        assert self.h.send("nobody", "/help") == messages.HELP_TEXT
        assert "acc-7" in self.h.send("nobody", "/login acc-7")
        assert self.h.sessions.get_or_create_session("nobody").account_id == "acc-7"

    def test_command_without_session(self):
        assert self.h.send("nobody", "/add 50 comida") == messages.LOGIN_PROMPT

    def test_permission_denied_executes_nothing(self):
        self.h.login("u2")  # second user on acc-1 becomes a member
        reply = self.h.send("u2", "/budget comida 800")

        assert "manage budgets" in reply
        assert self.h.repo.list_budgets("acc-1") == []
        [metric] = [m for m in metrics(self.h) if m.user_id == "u2"]
        assert metric.success is False
        assert metric.permission_required == "manage_budgets"
        assert metric.permission_granted is False

    def test_member_can_add(self):
        self.h.login("u2")
        self.h.send("u2", "/add 10 cafe")
        assert len(self.h.repo.list_entries("acc-1")) == 1

    def test_set_budget_then_undo_restores_previous_amount(self):
        self.h.send("u1", "/budget comida 800")
        self.h.send("u1", "/budget comida 900")
        self.h.send("u1", "/undo")
        [budget] = self.h.repo.list_budgets("acc-1")
        assert budget["amount"] == 800


class TestDuplicateConfirmation:
    def setup_method(self):
        self.h = Harness()
        self.h.login("u1")
        self.h.send("u1", "/add 50 comida")
        self.warning = self.h.send("u1", "/add 50 comida pix")
        self.duplicate_id = DUPLICATE_ID.search(self.warning).group(1)

    def test_warning_leaves_a_pending_record(self):
        record = self.h.pending.get("u1", PendingKind.DUPLICATE_CONFIRMATION)
        assert record.payload["duplicate_id"] == self.duplicate_id
        assert len(self.h.repo.list_entries("acc-1")) == 1

    def test_yes_saves_without_recheck(self):
        reply = self.h.send("u1", "sim")
        assert "Expense saved" in reply
        assert len(self.h.repo.list_entries("acc-1")) == 2
        assert self.h.pending.get("u1", PendingKind.DUPLICATE_CONFIRMATION) is None

    def test_no_discards(self):
        assert self.h.send("u1", "não") == messages.DUPLICATE_DISCARDED
        assert len(self.h.repo.list_entries("acc-1")) == 1
        assert self.h.pending.get("u1", PendingKind.DUPLICATE_CONFIRMATION) is None

    def test_other_reply_discards(self):
        assert self.h.send("u1", "talvez") == messages.DUPLICATE_NOT_RECOGNIZED
        assert self.h.pending.get("u1", PendingKind.DUPLICATE_CONFIRMATION) is None
        assert len(self.h.repo.list_entries("acc-1")) == 1

    def test_command_while_duplicate_pending_releases_the_conversation(self):
        assert self.h.send("u1", "/add 30 uber") == messages.DUPLICATE_NOT_RECOGNIZED
        assert self.h.pending.get("u1", PendingKind.DUPLICATE_CONFIRMATION) is None

        assert "Expense saved" in self.h.send("u1", "/add 30 uber")
        assert len(self.h.repo.list_entries("acc-1")) == 2

    def test_quoted_reply_with_different_case(self):
        reply = self.h.send("u1", "yes", quoted_text=self.warning.lower())
        assert "Expense saved" in reply

    def test_quoted_reply_resolves_that_duplicate(self):
        reply = self.h.send("u1", "yes", quoted_text=self.warning)
        assert "Expense saved" in reply

    def test_quoted_reply_to_unknown_duplicate(self):
        reply = self.h.send("u1", "yes", quoted_text="🆔 Duplicate ID: ZZZZZZ")
        assert reply == messages.duplicate_not_found("ZZZZZZ")
        assert self.h.pending.get("u1", PendingKind.DUPLICATE_CONFIRMATION) is not None

    def test_expired_duplicate_is_parsed_fresh(self):
        self.h.clock.advance(301)
        self.h.send("u1", "sim")
        assert self.h.model.calls[-1]["text"] == "sim"
        assert len(self.h.repo.list_entries("acc-1")) == 1


class TestStatePriority:
    def setup_method(self):
        self.h = Harness()
        self.h.login("u1")

    def test_ocr_record_wins_over_later_routes(self):
        self.h.pending.set("u1", PendingKind.CREDIT_MODE_SELECTION, {"transaction_id": 1, "payment_method": "crédito"})
        self.h.pending.set("u1", PendingKind.OCR_CONFIRMATION, {
            "candidates": [{"amount": 10.0, "type": "expense"}], "editing_index": None,
        })
        reply = self.h.send("u1", "1")
        assert reply == messages.OCR_REPROMPT
        assert self.h.pending.get("u1", PendingKind.CREDIT_MODE_SELECTION) is not None
        assert metrics(self.h)[-1].strategy_used.value == "ocr_confirmation"

    def set_ocr_and_duplicate(self):
        self.h.pending.set("u1", PendingKind.OCR_CONFIRMATION, {
            "candidates": [{"amount": 10.0, "type": "expense", "category": "padaria"}], "editing_index": None,
        })
        self.h.pending.set("u1", PendingKind.DUPLICATE_CONFIRMATION, {
            "duplicate_id": "AB12CD", "action": "add_expense", "entities": {"amount": 50, "category": "comida"},
        })

    def test_unquoted_reply_answers_ocr_before_duplicate(self):
        self.set_ocr_and_duplicate()
        reply = self.h.send("u1", "sim")

        assert reply[-1] == messages.ocr_summary(1, 1)
        assert self.h.pending.get("u1", PendingKind.OCR_CONFIRMATION) is None
        assert self.h.pending.get("u1", PendingKind.DUPLICATE_CONFIRMATION) is not None
        [entry] = self.h.repo.list_entries("acc-1")
        assert entry.amount == 10.0

    def test_quoted_duplicate_reply_resolves_only_that_duplicate(self):
        self.set_ocr_and_duplicate()
        reply = self.h.send("u1", "sim", quoted_text="⚠️ Possible duplicate\n🆔 Duplicate ID: AB12CD")

        assert "Expense saved" in reply
        assert self.h.pending.get("u1", PendingKind.DUPLICATE_CONFIRMATION) is None
        assert self.h.pending.get("u1", PendingKind.OCR_CONFIRMATION) is not None
        [entry] = self.h.repo.list_entries("acc-1")
        assert entry.amount == 50.0

    def test_credit_mode_wins_over_duplicate(self):
        self.h.pending.set("u1", PendingKind.DUPLICATE_CONFIRMATION, {
            "duplicate_id": "AAAAAA", "action": "add_expense", "entities": {"amount": 5},
        })
        self.h.pending.set("u1", PendingKind.CREDIT_MODE_SELECTION, {"transaction_id": 1, "payment_method": "crédito"})
        self.h.send("u1", "simples")
        assert self.h.pending.get("u1", PendingKind.CREDIT_MODE_SELECTION) is None
        assert self.h.pending.get("u1", PendingKind.DUPLICATE_CONFIRMATION) is not None

    def test_transaction_reply_bypasses_pending_state(self):
        self.h.pending.set("u1", PendingKind.OCR_CONFIRMATION, {
            "candidates": [{"amount": 10.0, "type": "expense"}], "editing_index": None,
        })
        self.h.send("u1", "sim", quoted_text="🆔 ID: ZX98QW")
        assert self.h.pending.get("u1", PendingKind.OCR_CONFIRMATION) is not None
        assert self.h.model.calls[-1]["text"] == "sim [transaction_id: ZX98QW]"


class TestOcrAndSubFlows:
    def setup_method(self):
        self.h = Harness()
        self.h.login("u1")

    def offer(self, *candidates):
        return run(self.h.router.offer_ocr_candidates("u1", list(candidates)))

    def test_ocr_confirm_all(self):
        prompt = self.offer(
            OcrCandidate(amount=12.5, category="padaria"),
            OcrCandidate(amount=80.0, category="mercado"),
        )
        assert "2 transaction(s)" in prompt

        lines = self.h.send("u1", "sim")
        assert lines[0].startswith("1/2 - ")
        assert lines[1].startswith("2/2 - ")
        assert lines[-1] == messages.ocr_summary(2, 2)
        assert len(self.h.repo.list_entries("acc-1")) == 2
        assert self.h.pending.get("u1", PendingKind.OCR_CONFIRMATION) is None

    def test_ocr_edit_then_confirm(self):
        self.offer(OcrCandidate(amount=12.5, category="padaria"))
        assert self.h.send("u1", "editar 3") == messages.ocr_invalid_number(1)
        assert self.h.send("u1", "valor: 15,00") == messages.OCR_EDIT_HELP
        self.h.send("u1", "editar 1")
        self.h.send("u1", "valor: 15,00")
        self.h.send("u1", "ok")
        [entry] = self.h.repo.list_entries("acc-1")
        assert entry.amount == 15.0

    def test_ocr_cancel(self):
        self.offer(OcrCandidate(amount=12.5))
        assert self.h.send("u1", "cancelar") == messages.OCR_CANCELLED
        assert self.h.repo.list_entries("acc-1") == []

    def test_ocr_auto_add(self):
        self.h.send("u1", "/settings ocr auto")
        lines = self.offer(OcrCandidate(amount=12.5, category="padaria"))
        assert lines[-1] == messages.ocr_summary(1, 1)
        assert len(self.h.repo.list_entries("acc-1")) == 1

    def test_credit_card_expense_asks_for_mode(self):
        reply = self.h.send("u1", "/add 100 mercado crédito")
        assert messages.CREDIT_MODE_PROMPT in reply
        assert self.h.send("u1", "3") == messages.CREDIT_MODE_INVALID

        self.h.send("u1", "1")
        [card] = self.h.repo.credit_cards("acc-1")
        assert card["name"] == "crédito"
        assert self.h.pending.get("u1", PendingKind.CREDIT_MODE_SELECTION) is None

    def test_payoff_flow(self):
        card = self.h.repo.ensure_payment_method("acc-1", "nubank")
        self.h.repo.set_credit_mode(card.doc_id, True)
        self.h.repo.add_installment_plan("acc-1", card.doc_id, "geladeira", 2400, 12)
        self.h.repo.add_installment_plan("acc-1", card.doc_id, "celular", 1200, 6)
        self.h.model.answer("quitar parcelamento", "payoff_installment")

        prompt = self.h.send("u1", "quitar parcelamento")
        assert "geladeira" in prompt and "celular" in prompt
        self.h.send("u1", "celular")
        assert self.h.pending.get("u1", PendingKind.PAYOFF_FLOW).payload["step"] == "confirm"
        self.h.send("u1", "sim")

        [remaining] = self.h.repo.active_plans("acc-1")
        assert remaining["description"] == "geladeira"

    def test_mode_switch_warning(self):
        card = self.h.repo.ensure_payment_method("acc-1", "nubank")
        self.h.repo.set_credit_mode(card.doc_id, True)
        self.h.repo.add_installment_plan("acc-1", card.doc_id, "geladeira", 2400, 12)
        self.h.model.answer("nubank modo simples", "switch_credit_mode", payment_method="nubank",
                             target_mode="simple")

        assert self.h.send("u1", "nubank modo simples").endswith(messages.MODE_SWITCH_PROMPT)
        self.h.send("u1", "quitar")

        assert self.h.repo.active_plans("acc-1") == []
        assert self.h.repo.credit_cards("acc-1") == []


class TestFailures:
    def setup_method(self):
        self.h = Harness()
        self.h.login("u1")

    def test_handler_exception_gives_generic_error_and_one_metric(self):
        async def explode(session, intent):
            raise RuntimeError("boom")

        self.h.router.handler.execute = explode
        assert self.h.send("u1", "/add 50 comida") == messages.GENERIC_ERROR
        [metric] = metrics(self.h)
        assert metric.success is False
        assert metric.error_message == "boom"

    def test_one_metric_per_message(self):
        self.h.model.answer("gastei 50 em comida", "add_expense", amount=50, category="comida")
        texts = ["/add 10 cafe", "gastei 50 em comida", "gastei 50 em comida", "/nope", "/undo", "blah"]
        for text in texts:
            self.h.send("u1", text)
        self.h.send("stranger", "oi")
        assert len(metrics(self.h)) == len(texts) + 1
