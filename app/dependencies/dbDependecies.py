from fastapi import Depends
from sqlalchemy.orm import Session
from typing import Annotated
from app.database.database import get_db

# Sesión síncrona por request (todas las operaciones del ledger son transaccionales)
db_dependency = Annotated[Session, Depends(get_db)]
