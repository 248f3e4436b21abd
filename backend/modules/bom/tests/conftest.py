from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from core.database import Base
from modules.bom.config.bom_consumption_config import BOMConsumptionSettings, reset_settings
from modules.bom.models.bom_models import (
    BOM, BOMItem, CommerceProduct, CommerceStoreCredentials, InternalProduct, ProductVariation
)
from modules.bom.models.ledger_models import BOMDeductionLedger  # noqa
from modules.bom.services.bom_consumption_service import BOMConsumptionService
from modules.bom.tests.helpers import ACCOUNT_ID, FakeCommerceStore, InMemoryRedis


@pytest.fixture(scope="function")
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine):
    """Create a fresh database session for each test."""
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def fake_redis():
    return InMemoryRedis()


@pytest.fixture
def store():
    return FakeCommerceStore()


@pytest.fixture
def bom_settings():
    reset_settings()
    yield BOMConsumptionSettings(RETRY_BASE_DELAY_SECONDS=0)
    reset_settings()


@pytest.fixture
def service(db_session, fake_redis, store, bom_settings):
    return BOMConsumptionService(
        db_session,
        redis_client=fake_redis,
        commerce_client=store.client,
        settings=bom_settings,
    )


@pytest.fixture
def catalog(db_session, store):
    """
    Gift Box (woo 100)      = 2 x Chocolate (woo 201) + 1 x Ribbon (internal)
    Lidded Box (woo 110)    = 2 x Chocolate + 1 x Box Lid (woo 202)
    Mug Set (woo 400)       = 1 x T-Shirt variation TS-RED (woo 301)
    T-Shirt TS-BLUE (302)   = 1 x Blank Shirt (internal)
    Bundle (woo 500)        = 1 x T-Shirt (variable parent, invalid)
    """
    db_session.add(CommerceStoreCredentials(
        account_id=ACCOUNT_ID,
        store_url="https://shop.example.com",
        consumer_key="ck_test",
        consumer_secret="cs_test",
    ))

    gift_box = CommerceProduct(account_id=ACCOUNT_ID, woo_id=100, name="Gift Box", stock_quantity=5)
    lidded_box = CommerceProduct(account_id=ACCOUNT_ID, woo_id=110, name="Lidded Box", stock_quantity=5)
    chocolate = CommerceProduct(account_id=ACCOUNT_ID, woo_id=201, name="Chocolate", stock_quantity=10)
    lid = CommerceProduct(account_id=ACCOUNT_ID, woo_id=202, name="Box Lid", stock_quantity=5)
    t_shirt = CommerceProduct(
        account_id=ACCOUNT_ID, woo_id=300, name="T-Shirt", product_type="variable",
        raw_data={"variations": [301, 302]}
    )
    mug_set = CommerceProduct(account_id=ACCOUNT_ID, woo_id=400, name="Mug Set", stock_quantity=0)
    bundle = CommerceProduct(account_id=ACCOUNT_ID, woo_id=500, name="Bundle", stock_quantity=0)
    db_session.add_all([gift_box, lidded_box, chocolate, lid, t_shirt, mug_set, bundle])
    db_session.flush()

    red = ProductVariation(product_id=t_shirt.id, woo_id=301, sku="TS-RED", stock_quantity=20)
    blue = ProductVariation(product_id=t_shirt.id, woo_id=302, sku="TS-BLUE", stock_quantity=3)
    ribbon = InternalProduct(account_id=ACCOUNT_ID, name="Ribbon", stock_quantity=50)
    blank_shirt = InternalProduct(account_id=ACCOUNT_ID, name="Blank Shirt", stock_quantity=8)
    db_session.add_all([red, blue, ribbon, blank_shirt])
    db_session.flush()

    gift_box_bom = BOM(product_id=gift_box.id, variation_id=0, items=[
        BOMItem(child_product_id=chocolate.id, quantity=2, position=0),
        BOMItem(internal_product_id=ribbon.id, quantity=1, position=1),
    ])
    lidded_box_bom = BOM(product_id=lidded_box.id, variation_id=0, items=[
        BOMItem(child_product_id=chocolate.id, quantity=2, position=0),
        BOMItem(child_product_id=lid.id, quantity=1, position=1),
    ])
    mug_set_bom = BOM(product_id=mug_set.id, variation_id=0, items=[
        BOMItem(child_product_id=t_shirt.id, child_variation_id=red.id, quantity=1),
    ])
    blue_bom = BOM(product_id=t_shirt.id, variation_id=302, items=[
        BOMItem(internal_product_id=blank_shirt.id, quantity=1),
    ])
    bundle_bom = BOM(product_id=bundle.id, variation_id=0, items=[
        BOMItem(child_product_id=t_shirt.id, quantity=1),
    ])
    db_session.add_all([gift_box_bom, lidded_box_bom, mug_set_bom, blue_bom, bundle_bom])
    db_session.commit()

    store.add_product(100, 5)
    store.add_product(110, 5)
    store.add_product(201, 10)
    store.add_product(202, 5)
    store.add_product(300, None, product_type="variable")
    store.add_variation(300, 301, 20)
    store.add_variation(300, 302, 3)
    store.add_product(400, 0)
    store.add_product(500, 0)

    return SimpleNamespace(
        gift_box=gift_box,
        lidded_box=lidded_box,
        chocolate=chocolate,
        lid=lid,
        t_shirt=t_shirt,
        red=red,
        blue=blue,
        mug_set=mug_set,
        bundle=bundle,
        ribbon=ribbon,
        blank_shirt=blank_shirt,
        gift_box_bom=gift_box_bom,
        mug_set_bom=mug_set_bom,
    )

