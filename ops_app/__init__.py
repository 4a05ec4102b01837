"""Operations dashboard application package."""
