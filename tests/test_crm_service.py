from atende.models import Deal
from atende.services.crm_service import DealStage, advance_deal, open_deal

PHONE = "5511999990000"


def _advance(db, seed, stage, **kwargs):
    deal = advance_deal(db, company_id=seed.company.id, customer_phone=PHONE, stage=stage, **kwargs)
    db.commit()
    return deal


class TestAdvanceDeal:
    def test_creates_deal_on_demand(self, db, seed):
        deal = _advance(db, seed, DealStage.LEAD, customer_name="Maria")

        assert deal.stage == "LEAD"
        assert deal.title == "Oportunidade - Maria"
        assert open_deal(db, seed.company.id, PHONE).id == deal.id

    def test_moves_forward(self, db, seed):
        first = _advance(db, seed, DealStage.LEAD)
        second = _advance(db, seed, DealStage.INTERESTED, note="Camiseta Azul")

        assert second.id == first.id
        assert second.stage == "INTERESTED"
        assert second.notes == "Camiseta Azul"

    def test_never_moves_backwards(self, db, seed):
        _advance(db, seed, DealStage.NEGOTIATING)
        deal = _advance(db, seed, DealStage.LEAD, customer_name="Maria")

        assert deal.stage == "NEGOTIATING"
        assert deal.customer_name == "Maria"

    def test_closed_won_is_terminal(self, db, seed):
        won = _advance(db, seed, DealStage.CLOSED_WON, value=59.9)

        assert won.closed_at is not None
        assert open_deal(db, seed.company.id, PHONE) is None

        fresh = _advance(db, seed, DealStage.INTERESTED)
        assert fresh.id != won.id
        assert db.query(Deal).count() == 2
